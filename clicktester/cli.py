#!/usr/bin/env python3
"""Command-line entry point: batch run, stress run, or local control page."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
import webbrowser
from typing import Sequence

from uvicorn.logging import DefaultFormatter

from clicktester.config import settings
from clicktester.connectors.clickhouse_client import (
    ClickHouseClient,
    ClickHouseConnectionError,
    connect,
)
from clicktester.core.config_loader import ConfigError, load_config
from clicktester.core.runner import run_tasks
from clicktester.core.stress import run_stress
from clicktester.core.task_builder import build_tasks, stress_query_by_name
from clicktester.models.test_config import AppConfig
from clicktester.models.test_result import RunResult
from clicktester.reports import (
    ReportMeta,
    json_path_for,
    render_error_samples,
    render_stress_summary,
    write_html,
    write_json,
)

logger = logging.getLogger(__name__)

FORMATS = ("html", "json", "both")


class ReportError(Exception):
    """Report file could not be written."""


def configure_logging(level: str | None = None) -> None:
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(DefaultFormatter(fmt=settings.LOG_FORMAT, use_colors=True))
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        handlers=[console_handler],
        force=True,
    )
    # Driver internals are noisy at DEBUG.
    logging.getLogger("clickhouse_driver").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clicktester",
        description="ClickHouse table structure and query smoke tester.",
    )
    parser.add_argument(
        "--config",
        default=settings.DEFAULT_CONFIG_PATH,
        help=f"Path to YAML/JSON config (default: {settings.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Override number of workers (0 = use config)",
    )
    parser.add_argument(
        "--output",
        default="",
        help="Path to the HTML report (overrides report.output_path)",
    )
    parser.add_argument(
        "--format",
        choices=FORMATS,
        default="html",
        help="Report format: html, json or both",
    )
    parser.add_argument(
        "--stress",
        action="store_true",
        help="Run the stress test (stress_test.query_name for duration_minutes)",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Start the local control page and open it in the browser",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.APP_PORT,
        help=f"Port for --serve (default: {settings.APP_PORT})",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Do not open the browser in --serve mode",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser


def apply_overrides(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.workers and args.workers > 0:
        cfg.execution.workers = args.workers
    if args.output:
        cfg.report.output_path = args.output
    return cfg


async def _connect(cfg: AppConfig, workers: int) -> ClickHouseClient:
    # One executor thread per worker at minimum, or queries queue client-side.
    max_workers = max(settings.CLICKHOUSE_EXECUTOR_MAX_WORKERS, workers)
    return await connect(
        cfg.clickhouse,
        query_timeout=cfg.execution.query_timeout_sec,
        max_workers=max_workers,
    )


def _request_stop(stop_event: asyncio.Event, sig: signal.Signals) -> None:
    if stop_event.is_set():
        # Second signal: give up on a graceful stop.
        raise KeyboardInterrupt
    logger.warning("Received %s; stopping, press Ctrl+C again to abort", sig.name)
    stop_event.set()


@contextlib.contextmanager
def stop_on_signals(stop_event: asyncio.Event):
    """Route SIGINT/SIGTERM to stop_event while the block runs."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, stop_event, sig)
        except (NotImplementedError, RuntimeError, ValueError):
            # No loop signal support here; Ctrl+C falls back to KeyboardInterrupt.
            continue
        installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def write_reports(cfg: AppConfig, result: RunResult, fmt: str) -> list[str]:
    meta = ReportMeta.from_config(cfg, cfg.execution.workers)
    html_path = cfg.report.output_path
    written: list[str] = []
    try:
        if fmt in ("html", "both"):
            written.append(str(write_html(html_path, result, meta)))
        if fmt in ("json", "both"):
            written.append(str(write_json(json_path_for(html_path), result, meta)))
    except OSError as exc:
        raise ReportError(f"report: {exc}") from exc
    return written


async def run_batch(cfg: AppConfig, fmt: str) -> int:
    tasks = build_tasks(cfg)
    workers = cfg.execution.workers
    client = await _connect(cfg, workers)
    stop_event = asyncio.Event()
    try:
        with stop_on_signals(stop_event):
            result = await run_tasks(
                tasks,
                workers,
                client,
                float(cfg.execution.query_timeout_sec),
                stop_event=stop_event,
            )
    finally:
        await client.close()

    paths = write_reports(cfg, result, fmt)
    print(
        f"clicktester: tasks={result.total}, passed={result.passed}, "
        f"failed={result.failed}, report={', '.join(paths)}"
    )
    for r in result.results:
        if not r.passed:
            print(f"  FAIL {r.name} ({r.kind.value}): {r.error}", file=sys.stderr)
    return 130 if stop_event.is_set() else 0


async def run_stress_mode(cfg: AppConfig) -> int:
    stress = cfg.stress_test
    if stress is None or not stress.query_name:
        raise ConfigError(
            "stress: config must have stress_test.query_name (and duration_minutes, workers)"
        )
    base_query = stress_query_by_name(cfg, stress.query_name)
    workers = max(1, stress.workers or cfg.execution.workers)
    duration_seconds = stress.duration_minutes * 60

    client = await _connect(cfg, workers)
    print(
        f"clicktester stress: duration={duration_seconds:.0f}s, "
        f"workers={workers}, query={stress.query_name}"
    )
    stop_event = asyncio.Event()
    try:
        with stop_on_signals(stop_event):
            result = await run_stress(
                base_query,
                workers,
                float(cfg.execution.query_timeout_sec),
                client,
                duration_seconds=duration_seconds,
                stop_event=stop_event,
            )
    finally:
        await client.close()

    print(render_stress_summary(result))
    if result.error_samples:
        print("error samples:", file=sys.stderr)
        for line in render_error_samples(result):
            print(line, file=sys.stderr)
    return 130 if stop_event.is_set() else 0


async def _open_browser(url: str) -> None:
    # Give uvicorn a moment to bind before the browser hits the page.
    await asyncio.sleep(0.5)
    await asyncio.to_thread(webbrowser.open, url)


async def run_serve(cfg: AppConfig, port: int, open_browser: bool) -> int:
    import uvicorn

    from clicktester.main import create_app

    tasks = build_tasks(cfg)
    workers = cfg.execution.workers
    client = await _connect(cfg, workers)
    port = port if port > 0 else settings.APP_PORT
    base_url = f"http://{settings.APP_HOST}:{port}"

    app = create_app(cfg, tasks, client, workers=workers)
    server = uvicorn.Server(
        uvicorn.Config(app, host=settings.APP_HOST, port=port, log_config=None)
    )
    print(f"clicktester: server at {base_url} (Ctrl+C to stop)")
    browser_task = asyncio.create_task(_open_browser(base_url)) if open_browser else None
    try:
        await server.serve()
    finally:
        if browser_task is not None:
            browser_task.cancel()
        await client.close()
    return 0


async def _run(args: argparse.Namespace) -> int:
    cfg = apply_overrides(load_config(args.config), args)
    if args.stress:
        return await run_stress_mode(cfg)
    if args.serve:
        return await run_serve(
            cfg, args.port, settings.OPEN_BROWSER and not args.no_browser
        )
    return await run_batch(cfg, args.format)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    try:
        return asyncio.run(_run(args))
    except ConfigError as exc:
        print(f"config: {exc}", file=sys.stderr)
        return 1
    except ClickHouseConnectionError as exc:
        print(f"clickhouse: {exc}", file=sys.stderr)
        return 1
    except ReportError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("clicktester: interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
