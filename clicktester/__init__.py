"""ClickHouse table structure and query performance tester."""

__version__ = "0.1.0"
