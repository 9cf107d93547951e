"""
ClickHouse Client

Async facade over the blocking ClickHouse drivers:
- HTTP/HTTPS interface (ports 8123/8443) via clickhouse-connect
- native protocol (9000/9440 and anything else) via clickhouse-driver

Driver calls run on a thread pool so that concurrent workers issue
concurrent queries. Besides the result row count, every query reports
read_rows/read_bytes and, on request, memory usage and the partitions it
touched (from system.query_log / system.parts).
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import tempfile
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import clickhouse_connect
from clickhouse_driver import Client as NativeDriverClient
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from clicktester.config import settings
from clicktester.models.test_config import ClickHouseConfig
from clicktester.models.test_result import PartitionInfo

logger = logging.getLogger(__name__)

PORT_HTTP = 8123
PORT_HTTPS = 8443

# Delays before each system.query_log lookup; the log entry becomes visible
# shortly after SYSTEM FLUSH LOGS.
_QUERY_LOG_DELAYS = (0.0, 0.05, 0.15)
_CLUSTER_NAMES = ("default", "cluster")


class ClickHouseConnectionError(Exception):
    """Raised when the client cannot be constructed or the server does not answer ping."""


@dataclass
class QueryStats:
    """Optional per-query metadata. Missing values are not errors."""

    query_id: Optional[str] = None
    memory_usage: int = 0
    partitions: list[str] = field(default_factory=list)
    partition_details: list[PartitionInfo] = field(default_factory=list)


@dataclass
class QueryOutcome:
    rows: int
    read_rows: int
    read_bytes: int
    stats: QueryStats = field(default_factory=QueryStats)


class ClickHouseClient(Protocol):
    """Capability used by the runners. Safe to call from concurrent workers."""

    async def ping(self) -> None: ...

    async def query(self, sql: str, *, collect_stats: bool = False) -> QueryOutcome: ...

    async def explain(self, sql: str) -> str: ...

    async def close(self) -> None: ...


def generate_query_id() -> str:
    return "ct-" + secrets.token_hex(16)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


@dataclass
class TLSFiles:
    """Resolved TLS settings; PFX client certificates are unpacked to temp PEM files."""

    enabled: bool = False
    verify: bool = False
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    _temp_paths: list[str] = field(default_factory=list)

    def cleanup(self) -> None:
        for path in self._temp_paths:
            try:
                os.unlink(path)
            except OSError as exc:
                logger.debug("Failed to remove temp TLS file %s: %s", path, exc)
        self._temp_paths.clear()


def _write_temp_pem(data: bytes, suffix: str) -> str:
    fd, path = tempfile.mkstemp(prefix="clicktester-", suffix=suffix)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
    return path


def build_tls(cfg: ClickHouseConfig) -> TLSFiles:
    """
    Build TLS settings from the connection config.

    TLS is on when ``secure`` is set or the HTTPS port is used. Certificate
    verification is skipped unless explicitly requested or a CA file is given.
    """
    tls = TLSFiles(enabled=cfg.secure or cfg.port == PORT_HTTPS)
    if not tls.enabled:
        return tls

    insecure = cfg.tls_skip_verify is None or cfg.tls_skip_verify
    tls.verify = not insecure
    if cfg.tls_ca_file:
        if not os.path.isfile(cfg.tls_ca_file):
            raise ClickHouseConnectionError(f"tls: read ca file: {cfg.tls_ca_file} not found")
        tls.ca_file = cfg.tls_ca_file
        tls.verify = True

    if cfg.tls_pfx_file:
        try:
            with open(cfg.tls_pfx_file, "rb") as fh:
                pfx_data = fh.read()
        except OSError as exc:
            raise ClickHouseConnectionError(f"tls: read pfx file: {exc}") from exc
        password = cfg.tls_pfx_password.encode() if cfg.tls_pfx_password else None
        try:
            key, cert, chain = pkcs12.load_key_and_certificates(pfx_data, password)
        except ValueError as exc:
            raise ClickHouseConnectionError(f"tls: decode pfx: {exc}") from exc
        if key is None or cert is None:
            raise ClickHouseConnectionError("tls: decode pfx: no key/certificate in bundle")

        cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        for extra in chain or []:
            cert_pem += extra.public_bytes(serialization.Encoding.PEM)
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        tls.cert_file = _write_temp_pem(cert_pem, ".crt")
        tls.key_file = _write_temp_pem(key_pem, ".key")
        tls._temp_paths.extend([tls.cert_file, tls.key_file])

    return tls


class _BaseClickHouseClient:
    """
    Shared plumbing: executor management, EXPLAIN, system.query_log lookups.

    Subclasses implement the blocking ``_execute_rows`` and ``_query_sync``.
    """

    protocol = "native"

    def __init__(
        self,
        cfg: ClickHouseConfig,
        *,
        query_timeout: float = 0,
        executor: Executor | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.cfg = cfg
        self.query_timeout = float(query_timeout or 0)
        self._owns_executor = executor is None
        self._executor: Executor = executor or ThreadPoolExecutor(
            max_workers=max(1, int(max_workers or settings.CLICKHOUSE_EXECUTOR_MAX_WORKERS)),
            thread_name_prefix="ch-query",
        )
        self._tls = build_tls(cfg)
        self._closed = False

    @property
    def tls_enabled(self) -> bool:
        return self._tls.enabled

    def _run_in_executor(self, func, *args):
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._executor, func, *args)

    def _query_settings(self) -> dict[str, Any]:
        if self.query_timeout > 0:
            return {"max_execution_time": int(max(1, self.query_timeout))}
        return {}

    # ------------------------------------------------------------------
    # Blocking driver calls (run on executor threads)
    # ------------------------------------------------------------------

    def _execute_rows(self, sql: str) -> list[tuple]:
        raise NotImplementedError

    def _query_sync(self, sql: str, query_id: str) -> tuple[int, int, int]:
        """Run sql; return (rows returned, read_rows, read_bytes)."""
        raise NotImplementedError

    def _close_sync(self) -> None:
        raise NotImplementedError

    def _flush_logs(self) -> None:
        try:
            self._execute_rows("SYSTEM FLUSH LOGS")
        except Exception as exc:
            logger.debug("SYSTEM FLUSH LOGS failed: %s", exc)

    def _query_log_row(self, query_id: str) -> tuple | None:
        """
        Find the QueryFinish row for query_id: locally first, then across
        replicas when connected through a load balancer.
        """
        qid = _escape(query_id)
        base = (
            "SELECT read_rows, read_bytes, memory_usage, partitions "
            "FROM {source} WHERE query_id = '{qid}' AND type = 2 LIMIT 1"
        )
        deadline = time.monotonic() + settings.CLICKHOUSE_QUERY_LOG_TIMEOUT
        last_err: Exception | None = None

        local = base.format(source="system.query_log", qid=qid)
        for delay in _QUERY_LOG_DELAYS:
            if delay:
                time.sleep(delay)
            try:
                rows = self._execute_rows(local)
            except Exception as exc:
                last_err = exc
                # Servers without query_log.partitions: retry without the column.
                rows = self._query_log_row_legacy(qid)
            if rows:
                return tuple(rows[0])
            if time.monotonic() > deadline:
                break

        for cluster in _CLUSTER_NAMES:
            sql = (
                base.format(
                    source=f"clusterAllReplicas('{cluster}', system.query_log)", qid=qid
                )
                + " SETTINGS skip_unavailable_shards = 1"
            )
            try:
                rows = self._execute_rows(sql)
            except Exception as exc:
                last_err = exc
                continue
            if rows:
                return tuple(rows[0])

        if last_err is not None:
            logger.warning("query_log lookup failed: %s", last_err)
        logger.warning(
            "read_rows/read_bytes not found in system.query_log (query_id=%s). "
            "Requires log_queries=1 and access to system.query_log.",
            query_id,
        )
        return None

    def _query_log_row_legacy(self, qid: str) -> list[tuple]:
        try:
            rows = self._execute_rows(
                "SELECT read_rows, read_bytes, memory_usage "
                f"FROM system.query_log WHERE query_id = '{qid}' AND type = 2 LIMIT 1"
            )
        except Exception as exc:
            logger.debug("query_log lookup (legacy columns) failed: %s", exc)
            return []
        return [tuple(r) + ([],) for r in rows]

    def _partition_details(self, partitions: list[str]) -> list[PartitionInfo]:
        if not partitions or not self.cfg.table_name:
            return []
        # query_log reports partitions as "db.table.partition_id"
        ids = sorted({p.rsplit(".", 1)[-1].strip("`") for p in partitions})
        id_list = ", ".join(f"'{_escape(i)}'" for i in ids)
        sql = (
            "SELECT partition, sum(rows) AS rows, sum(bytes_on_disk) AS bytes "
            "FROM system.parts "
            f"WHERE database = '{_escape(self.cfg.database)}' "
            f"AND table = '{_escape(self.cfg.table_name)}' AND active "
            f"AND partition_id IN ({id_list}) "
            "GROUP BY partition ORDER BY partition"
        )
        try:
            rows = self._execute_rows(sql)
        except Exception as exc:
            logger.warning("system.parts lookup failed: %s", exc)
            return []
        return [
            PartitionInfo(partition=str(r[0]), rows=int(r[1]), bytes=int(r[2]))
            for r in rows
        ]

    def _collect_stats_sync(self, query_id: str) -> tuple[int, int, QueryStats]:
        stats = QueryStats(query_id=query_id)
        self._flush_logs()
        row = self._query_log_row(query_id)
        if row is None:
            return 0, 0, stats
        read_rows, read_bytes, memory_usage, partitions = row
        stats.memory_usage = int(memory_usage or 0)
        stats.partitions = [str(p) for p in (partitions or [])]
        stats.partition_details = self._partition_details(stats.partitions)
        return int(read_rows or 0), int(read_bytes or 0), stats

    def _query_with_stats_sync(self, sql: str, collect_stats: bool) -> QueryOutcome:
        query_id = generate_query_id()
        rows, read_rows, read_bytes = self._query_sync(sql, query_id)
        stats = QueryStats(query_id=query_id)

        need_log_counters = self.protocol == "http" and read_rows == 0 and read_bytes == 0
        if collect_stats or need_log_counters:
            log_rows, log_bytes, stats = self._collect_stats_sync(query_id)
            if need_log_counters:
                read_rows, read_bytes = log_rows, log_bytes

        return QueryOutcome(rows=rows, read_rows=read_rows, read_bytes=read_bytes, stats=stats)

    def _explain_sync(self, sql: str) -> str:
        rows = self._execute_rows("EXPLAIN indexes=1 " + sql)
        return "".join(
            "\t".join("" if v is None else str(v) for v in row) + "\n" for row in rows
        )

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def ping(self) -> None:
        await self._run_in_executor(self._execute_rows, "SELECT 1")

    async def query(self, sql: str, *, collect_stats: bool = False) -> QueryOutcome:
        return await self._run_in_executor(self._query_with_stats_sync, sql, collect_stats)

    async def explain(self, sql: str) -> str:
        return await self._run_in_executor(self._explain_sync, sql)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._run_in_executor(self._close_sync)
        finally:
            self._tls.cleanup()
            if self._owns_executor:
                # Never wait: abandoned calls may still be running after a timeout.
                self._executor.shutdown(wait=False)


class HttpClickHouseClient(_BaseClickHouseClient):
    """HTTP/HTTPS client via clickhouse-connect (one shared HTTP client)."""

    protocol = "http"

    def __init__(self, cfg: ClickHouseConfig, **kwargs: Any) -> None:
        super().__init__(cfg, **kwargs)
        tls = self._tls
        client_kwargs: dict[str, Any] = {
            "host": cfg.host,
            "port": cfg.port,
            "username": cfg.user,
            "password": cfg.password,
            "database": cfg.database,
            "secure": tls.enabled,
            "connect_timeout": settings.CLICKHOUSE_CONNECT_TIMEOUT,
            # Concurrent queries are not allowed within one HTTP session.
            "autogenerate_session_id": False,
        }
        if tls.enabled:
            client_kwargs["verify"] = tls.verify
            if tls.ca_file:
                client_kwargs["ca_cert"] = tls.ca_file
            if tls.cert_file:
                client_kwargs["client_cert"] = tls.cert_file
                client_kwargs["client_cert_key"] = tls.key_file
        if self.query_timeout > 0:
            client_kwargs["send_receive_timeout"] = int(self.query_timeout) + 5
        try:
            # get_client() already talks to the server (version and settings lookup).
            self._client = clickhouse_connect.get_client(**client_kwargs)
        except Exception:
            self._tls.cleanup()
            if self._owns_executor:
                self._executor.shutdown(wait=False)
            raise

    def _execute_rows(self, sql: str) -> list[tuple]:
        return list(self._client.query(sql).result_rows)

    def _query_sync(self, sql: str, query_id: str) -> tuple[int, int, int]:
        query_settings = {**self._query_settings(), "query_id": query_id}
        result = self._client.query(sql, settings=query_settings)
        summary = result.summary or {}
        return (
            len(result.result_rows),
            int(summary.get("read_rows") or 0),
            int(summary.get("read_bytes") or 0),
        )

    def _close_sync(self) -> None:
        self._client.close()


class NativeClickHouseClient(_BaseClickHouseClient):
    """
    Native protocol client via clickhouse-driver.

    A driver connection serves one query at a time, so each executor thread
    lazily opens its own connection.
    """

    protocol = "native"

    def __init__(self, cfg: ClickHouseConfig, **kwargs: Any) -> None:
        super().__init__(cfg, **kwargs)
        self._local = threading.local()
        self._clients: list[NativeDriverClient] = []
        self._clients_lock = threading.Lock()

    def _driver_kwargs(self) -> dict[str, Any]:
        tls = self._tls
        kwargs: dict[str, Any] = {
            "host": self.cfg.host,
            "port": self.cfg.port,
            "database": self.cfg.database,
            "user": self.cfg.user,
            "password": self.cfg.password,
            "connect_timeout": settings.CLICKHOUSE_CONNECT_TIMEOUT,
            "client_name": "clicktester",
        }
        if tls.enabled:
            kwargs["secure"] = True
            kwargs["verify"] = tls.verify
            if tls.ca_file:
                kwargs["ca_certs"] = tls.ca_file
            if tls.cert_file:
                kwargs["certfile"] = tls.cert_file
                kwargs["keyfile"] = tls.key_file
        return kwargs

    def _driver(self) -> NativeDriverClient:
        client = getattr(self._local, "client", None)
        if client is None:
            client = NativeDriverClient(**self._driver_kwargs())
            self._local.client = client
            with self._clients_lock:
                self._clients.append(client)
        return client

    def _execute_rows(self, sql: str) -> list[tuple]:
        return list(self._driver().execute(sql))

    def _query_sync(self, sql: str, query_id: str) -> tuple[int, int, int]:
        client = self._driver()
        rows = client.execute(sql, query_id=query_id, settings=self._query_settings())
        progress = client.last_query.progress if client.last_query else None
        read_rows = int(progress.rows) if progress else 0
        read_bytes = int(progress.bytes) if progress else 0
        return len(rows), read_rows, read_bytes

    def _close_sync(self) -> None:
        with self._clients_lock:
            clients = list(self._clients)
            self._clients.clear()
        for client in clients:
            client.disconnect()


async def connect(
    cfg: ClickHouseConfig,
    *,
    query_timeout: float = 0,
    max_workers: int | None = None,
) -> ClickHouseClient:
    """
    Create a client for cfg and verify the connection with a ping.

    Raises:
        ClickHouseConnectionError: construction or ping failed
    """
    use_http = cfg.port in (PORT_HTTP, PORT_HTTPS)
    client_cls = HttpClickHouseClient if use_http else NativeClickHouseClient
    try:
        client = client_cls(cfg, query_timeout=query_timeout, max_workers=max_workers)
    except ClickHouseConnectionError:
        raise
    except Exception as exc:
        raise ClickHouseConnectionError(f"clickhouse open: {exc}") from exc

    try:
        await client.ping()
    except Exception as exc:
        await client.close()
        raise ClickHouseConnectionError(f"clickhouse ping: {exc}") from exc

    logger.info(
        "Connected to ClickHouse %s:%d (%s, tls=%s)",
        cfg.host,
        cfg.port,
        client.protocol,
        client.tls_enabled,
    )
    return client
