import asyncio
import json
import signal
import sys
from pathlib import Path

import pytest

from clicktester import cli
from clicktester.connectors.clickhouse_client import ClickHouseConnectionError
from clicktester.core.config_loader import load_config

from fake_clickhouse import FakeClickHouseClient


def _write_config(tmp_path: Path, **extra) -> Path:
    raw = {
        "clickhouse": {"host": "ch.local", "database": "logs_db", "table_name": "app_logs"},
        "execution": {"workers": 2, "query_timeout_sec": 5},
        "report": {"output_path": str(tmp_path / "reports" / "report.html")},
        "structure_checks": [{"name": "parts", "type": "partitions"}],
        "query_templates": [
            {"name": "count", "query": "SELECT count() FROM $table_name$"},
            {"name": "bad", "query": "SELECT broken FROM $table_name$"},
        ],
    }
    raw.update(extra)
    path = tmp_path / "config.json"
    path.write_text(json.dumps(raw), encoding="utf-8")
    return path


@pytest.fixture
def fake_connect(monkeypatch):
    clients: list[FakeClickHouseClient] = []
    calls: list[dict] = []

    async def _connect(cfg, *, query_timeout=0, max_workers=None):
        calls.append({"host": cfg.host, "query_timeout": query_timeout, "max_workers": max_workers})
        client = FakeClickHouseClient(errors={"broken": RuntimeError("Code: 47. Unknown column")})
        clients.append(client)
        return client

    monkeypatch.setattr(cli, "connect", _connect)
    return clients, calls


def test_parser_defaults():
    args = cli.build_parser().parse_args([])

    assert args.workers == 0
    assert args.format == "html"
    assert args.stress is False
    assert args.serve is False


def test_parser_rejects_unknown_format():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["--format", "xml"])


def test_missing_config_exits_1(tmp_path, capsys):
    code = cli.main(["--config", str(tmp_path / "nope.yaml")])

    assert code == 1
    assert "config:" in capsys.readouterr().err


def test_undecodable_config_exits_1(tmp_path, capsys):
    path = tmp_path / "config.yaml"
    path.write_bytes(b"\xff\xfe\x00")

    code = cli.main(["--config", str(path)])

    assert code == 1
    assert "cannot read config" in capsys.readouterr().err


def test_connection_failure_exits_1(tmp_path, capsys, monkeypatch):
    async def _refuse(cfg, **kwargs):
        raise ClickHouseConnectionError("clickhouse ping: connection refused")

    monkeypatch.setattr(cli, "connect", _refuse)

    code = cli.main(["--config", str(_write_config(tmp_path))])

    assert code == 1
    assert "connection refused" in capsys.readouterr().err
    assert not (tmp_path / "reports").exists()


def test_batch_run_writes_both_reports(tmp_path, capsys, fake_connect):
    clients, calls = fake_connect
    config = _write_config(tmp_path)

    code = cli.main(["--config", str(config), "--format", "both", "--workers", "3"])

    out, err = capsys.readouterr()
    assert code == 0
    assert "tasks=3, passed=2, failed=1" in out
    assert "FAIL bad (query): Code: 47. Unknown column" in err
    assert (tmp_path / "reports" / "report.html").is_file()
    data = json.loads((tmp_path / "reports" / "report.json").read_text(encoding="utf-8"))
    assert data["meta"]["workers"] == 3
    assert clients[0].closed is True
    assert calls[0]["query_timeout"] == 5
    assert calls[0]["max_workers"] >= 3


def test_output_override_and_json_only(tmp_path, fake_connect):
    out_path = tmp_path / "custom" / "run.html"

    code = cli.main(
        ["--config", str(_write_config(tmp_path)), "--output", str(out_path), "--format", "json"]
    )

    assert code == 0
    assert (tmp_path / "custom" / "run.json").is_file()
    assert not out_path.exists()


def test_stress_requires_stress_section(tmp_path, capsys, fake_connect):
    code = cli.main(["--config", str(_write_config(tmp_path)), "--stress"])

    assert code == 1
    assert "stress_test.query_name" in capsys.readouterr().err


def test_stress_unknown_query_name(tmp_path, capsys, fake_connect):
    config = _write_config(tmp_path, stress_test={"query_name": "missing"})

    code = cli.main(["--config", str(config), "--stress"])

    assert code == 1
    assert "not found" in capsys.readouterr().err


def test_stress_run_prints_summary(tmp_path, capsys, fake_connect):
    clients, _ = fake_connect
    config = _write_config(
        tmp_path,
        stress_test={"query_name": "count", "duration_minutes": 0.001, "workers": 2},
    )

    code = cli.main(["--config", str(config), "--stress"])

    out = capsys.readouterr().out
    assert code == 0
    assert "clicktester stress:" in out
    assert "Stress: total=" in out
    assert clients[0].closed is True
    assert all(q.startswith("SELECT count() FROM logs_db.app_logs -- no ") for q in clients[0].queries)


posix_signals = pytest.mark.skipif(
    sys.platform == "win32", reason="loop signal handlers need a POSIX event loop"
)


def _slow_connect(monkeypatch, **fake_kwargs) -> list[FakeClickHouseClient]:
    clients: list[FakeClickHouseClient] = []

    async def _connect(cfg, **kwargs):
        client = FakeClickHouseClient(**fake_kwargs)
        clients.append(client)
        return client

    monkeypatch.setattr(cli, "connect", _connect)
    return clients


@posix_signals
@pytest.mark.asyncio
async def test_sigint_during_stress_still_prints_summary(tmp_path, capsys, monkeypatch):
    clients = _slow_connect(monkeypatch, delay=0.01)
    cfg = load_config(
        _write_config(
            tmp_path,
            stress_test={"query_name": "count", "duration_minutes": 1, "workers": 2},
        )
    )
    asyncio.get_running_loop().call_later(0.2, signal.raise_signal, signal.SIGINT)

    code = await asyncio.wait_for(cli.run_stress_mode(cfg), timeout=10)

    out = capsys.readouterr().out
    assert code == 130
    assert "Stress: total=" in out
    assert clients[0].queries
    assert clients[0].closed is True


@posix_signals
@pytest.mark.asyncio
async def test_sigint_during_batch_reports_every_task(tmp_path, capsys, monkeypatch):
    _slow_connect(monkeypatch, delay=5.0)
    cfg = load_config(_write_config(tmp_path))
    asyncio.get_running_loop().call_later(0.1, signal.raise_signal, signal.SIGINT)

    code = await asyncio.wait_for(cli.run_batch(cfg, "json"), timeout=10)

    out, err = capsys.readouterr()
    assert code == 130
    assert "tasks=3, passed=0, failed=3" in out
    assert "cancelled: run stopped" in err
    data = json.loads((tmp_path / "reports" / "report.json").read_text(encoding="utf-8"))
    assert data["total"] == data["failed"] == 3
