import datetime
import os

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from clicktester.connectors import clickhouse_client as ch
from clicktester.models.test_config import ClickHouseConfig


def _cfg(**kwargs) -> ClickHouseConfig:
    base = {"host": "ch.local", "database": "logs_db", "table_name": "app_logs"}
    base.update(kwargs)
    return ClickHouseConfig(**base)


def _write_pfx(path, password: bytes | None) -> None:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "clicktester")])
    now = datetime.datetime.now(datetime.UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    encryption = (
        serialization.BestAvailableEncryption(password)
        if password
        else serialization.NoEncryption()
    )
    path.write_bytes(
        pkcs12.serialize_key_and_certificates(b"client", key, cert, None, encryption)
    )


def test_tls_disabled_by_default():
    tls = ch.build_tls(_cfg())
    assert tls.enabled is False


def test_https_port_enables_tls_and_skips_verify_by_default():
    tls = ch.build_tls(_cfg(port=8443))
    assert tls.enabled is True
    assert tls.verify is False


def test_explicit_verify():
    tls = ch.build_tls(_cfg(secure=True, tls_skip_verify=False))
    assert tls.verify is True


def test_ca_file_turns_verification_on(tmp_path):
    ca = tmp_path / "ca.pem"
    ca.write_text("-----BEGIN CERTIFICATE-----\n", encoding="utf-8")

    tls = ch.build_tls(_cfg(secure=True, tls_ca_file=str(ca)))

    assert tls.verify is True
    assert tls.ca_file == str(ca)


def test_missing_ca_file_is_connection_error(tmp_path):
    with pytest.raises(ch.ClickHouseConnectionError, match="ca file"):
        ch.build_tls(_cfg(secure=True, tls_ca_file=str(tmp_path / "missing.pem")))


def test_pfx_is_unpacked_to_temp_pem_files(tmp_path):
    pfx = tmp_path / "client.pfx"
    _write_pfx(pfx, b"secret")

    tls = ch.build_tls(_cfg(secure=True, tls_pfx_file=str(pfx), tls_pfx_password="secret"))
    try:
        with open(tls.cert_file, "rb") as fh:
            assert fh.read().startswith(b"-----BEGIN CERTIFICATE-----")
        with open(tls.key_file, "rb") as fh:
            assert b"PRIVATE KEY" in fh.read()
    finally:
        tls.cleanup()

    assert not os.path.exists(tls.cert_file)
    assert not os.path.exists(tls.key_file)


def test_pfx_wrong_password(tmp_path):
    pfx = tmp_path / "client.pfx"
    _write_pfx(pfx, b"secret")

    with pytest.raises(ch.ClickHouseConnectionError, match="decode pfx"):
        ch.build_tls(_cfg(secure=True, tls_pfx_file=str(pfx), tls_pfx_password="wrong"))


def test_query_ids_are_unique():
    ids = {ch.generate_query_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(i.startswith("ct-") for i in ids)


class _StubDriver:
    """Blocking driver stand-in for the executor-backed client."""

    def __init__(self, rows=None, fail_ping=False):
        self.rows = rows or []
        self.fail_ping = fail_ping
        self.executed: list[str] = []

    def execute(self, sql):
        self.executed.append(sql)
        if self.fail_ping and sql == "SELECT 1":
            raise OSError("connection refused")
        return list(self.rows)


@pytest.mark.asyncio
async def test_connect_selects_http_for_http_ports(monkeypatch):
    created = []

    class _Http(ch.HttpClickHouseClient):
        def __init__(self, cfg, **kwargs):
            ch._BaseClickHouseClient.__init__(self, cfg, **kwargs)
            self.stub = _StubDriver()
            created.append(self)

        def _execute_rows(self, sql):
            return self.stub.execute(sql)

        def _close_sync(self):
            pass

    monkeypatch.setattr(ch, "HttpClickHouseClient", _Http)

    client = await ch.connect(_cfg(port=8123), max_workers=2)
    try:
        assert created and created[0] is client
        assert client.tls_enabled is False
        assert client.stub.executed == ["SELECT 1"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_connect_wraps_ping_failure(monkeypatch):
    class _Native(ch.NativeClickHouseClient):
        def _driver(self):
            return _StubDriver(fail_ping=True)

    monkeypatch.setattr(ch, "NativeClickHouseClient", _Native)

    with pytest.raises(ch.ClickHouseConnectionError, match="ping"):
        await ch.connect(_cfg(port=9000), max_workers=1)


@pytest.mark.asyncio
async def test_explain_joins_rows_with_tabs_and_newlines(monkeypatch):
    class _Native(ch.NativeClickHouseClient):
        def _driver(self):
            return _StubDriver(rows=[("Expression",), ("  Granules: 3/10", None)])

    client = _Native(_cfg(), max_workers=1)
    try:
        text = await client.explain("SELECT 1")
    finally:
        await client.close()

    assert text == "Expression\n  Granules: 3/10\t\n"


def test_tls_enabled_reflects_resolved_settings():
    client = _ScriptedClient(_cfg(port=8443), [])
    try:
        assert client.tls_enabled is True
    finally:
        client._executor.shutdown(wait=False)


class _ScriptedClient(ch._BaseClickHouseClient):
    """
    Answers driver calls from canned responses.

    ``responses`` is a list of (substring, rows-or-exception); the first key
    found in the SQL wins, anything else returns no rows.
    """

    def __init__(self, cfg, responses, *, protocol="native", counters=(1, 0, 0)):
        super().__init__(cfg, max_workers=1)
        self.protocol = protocol
        self.responses = responses
        self.counters = counters
        self.executed: list[str] = []

    def _execute_rows(self, sql):
        self.executed.append(sql)
        for key, answer in self.responses:
            if key in sql:
                if isinstance(answer, Exception):
                    raise answer
                return list(answer)
        return []

    def _query_sync(self, sql, query_id):
        self.executed.append(sql)
        return self.counters

    def _close_sync(self):
        pass

    def ran(self, fragment: str) -> list[str]:
        return [sql for sql in self.executed if fragment in sql]


LOCAL_LOG = "memory_usage, partitions FROM system.query_log"
LEGACY_LOG = "memory_usage FROM system.query_log"
CLUSTER_LOG = "clusterAllReplicas('default'"
PARTS = "FROM system.parts"


@pytest.mark.asyncio
async def test_collect_stats_fills_memory_and_partition_details():
    client = _ScriptedClient(
        _cfg(),
        [
            (LOCAL_LOG, [(1000, 8192, 4096, ["logs_db.app_logs.202401", "logs_db.app_logs.`202402`"])]),
            (PARTS, [("202401", 10, 100), ("202402", 20, 200)]),
        ],
        counters=(3, 1500, 9000),
    )
    try:
        outcome = await client.query("SELECT count() FROM logs_db.app_logs", collect_stats=True)
    finally:
        await client.close()

    # Native progress counters are kept; query_log only adds the extras.
    assert (outcome.rows, outcome.read_rows, outcome.read_bytes) == (3, 1500, 9000)
    assert outcome.stats.query_id.startswith("ct-")
    assert outcome.stats.memory_usage == 4096
    assert outcome.stats.partitions == ["logs_db.app_logs.202401", "logs_db.app_logs.`202402`"]
    assert [(p.partition, p.rows, p.bytes) for p in outcome.stats.partition_details] == [
        ("202401", 10, 100),
        ("202402", 20, 200),
    ]
    assert client.ran("SYSTEM FLUSH LOGS")
    (parts_sql,) = client.ran(PARTS)
    assert "partition_id IN ('202401', '202402')" in parts_sql
    assert "database = 'logs_db' AND table = 'app_logs'" in parts_sql
    assert outcome.stats.query_id in client.ran(LOCAL_LOG)[0]


@pytest.mark.asyncio
async def test_http_zero_counters_come_from_query_log():
    client = _ScriptedClient(
        _cfg(port=8123),
        [(LOCAL_LOG, [(700, 5600, 128, [])])],
        protocol="http",
        counters=(2, 0, 0),
    )
    try:
        outcome = await client.query("SELECT 1")
    finally:
        await client.close()

    assert (outcome.rows, outcome.read_rows, outcome.read_bytes) == (2, 700, 5600)
    assert client.ran(PARTS) == []


@pytest.mark.asyncio
async def test_http_reported_counters_skip_query_log():
    client = _ScriptedClient(
        _cfg(port=8123), [(LOCAL_LOG, [(1, 1, 1, [])])], protocol="http", counters=(2, 50, 400)
    )
    try:
        outcome = await client.query("SELECT 1")
    finally:
        await client.close()

    assert (outcome.read_rows, outcome.read_bytes) == (50, 400)
    assert client.ran("system.query_log") == []


@pytest.mark.asyncio
async def test_query_log_without_partitions_column_retries_legacy_columns():
    client = _ScriptedClient(
        _cfg(port=8123),
        [
            (LOCAL_LOG, RuntimeError("Missing columns: 'partitions'")),
            (LEGACY_LOG, [(10, 20, 30)]),
        ],
        protocol="http",
        counters=(1, 0, 0),
    )
    try:
        outcome = await client.query("SELECT 1", collect_stats=True)
    finally:
        await client.close()

    assert (outcome.read_rows, outcome.read_bytes) == (10, 20)
    assert outcome.stats.memory_usage == 30
    assert outcome.stats.partitions == []
    assert outcome.stats.partition_details == []


@pytest.mark.asyncio
async def test_query_log_falls_back_to_cluster_replicas():
    client = _ScriptedClient(
        _cfg(port=8123),
        [(CLUSTER_LOG, [(42, 4200, 0, None)])],
        protocol="http",
        counters=(1, 0, 0),
    )
    try:
        outcome = await client.query("SELECT 1")
    finally:
        await client.close()

    assert (outcome.read_rows, outcome.read_bytes) == (42, 4200)
    (cluster_sql,) = client.ran(CLUSTER_LOG)
    assert cluster_sql.endswith("SETTINGS skip_unavailable_shards = 1")
    # Three local attempts before going to the replicas.
    assert len(client.ran(LOCAL_LOG)) == 3


@pytest.mark.asyncio
async def test_missing_query_log_row_yields_zero_counters():
    client = _ScriptedClient(
        _cfg(port=8123),
        [("clusterAllReplicas", RuntimeError("Requested cluster 'default' not found"))],
        protocol="http",
        counters=(4, 0, 0),
    )
    try:
        outcome = await client.query("SELECT 1", collect_stats=True)
    finally:
        await client.close()

    assert (outcome.rows, outcome.read_rows, outcome.read_bytes) == (4, 0, 0)
    assert outcome.stats.query_id.startswith("ct-")
    assert outcome.stats.memory_usage == 0
    assert outcome.stats.partitions == []
