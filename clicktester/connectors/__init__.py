"""Database connectors."""

from clicktester.connectors.clickhouse_client import (
    ClickHouseClient,
    ClickHouseConnectionError,
    QueryOutcome,
    QueryStats,
    connect,
)

__all__ = [
    "ClickHouseClient",
    "ClickHouseConnectionError",
    "QueryOutcome",
    "QueryStats",
    "connect",
]
