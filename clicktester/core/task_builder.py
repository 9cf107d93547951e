"""
Task construction from the test configuration.

Structure checks come first, then query templates; ids are assigned from 1 in
that order. Query templates have their ``$placeholder$`` tokens substituted
from ``test_params``.
"""

from typing import List

from clicktester.core.config_loader import ConfigError
from clicktester.core.stress import TIME_OFFSET_PLACEHOLDER
from clicktester.models.task import Task, TaskKind, TaskOptions
from clicktester.models.test_config import AppConfig, StructureCheckType, TestParams

_STRUCTURE_DESCRIPTIONS = {
    StructureCheckType.PARTITIONS: "Lists the table's active partitions (system.parts).",
    StructureCheckType.INDEXES: (
        "Lists data skipping indexes and their types (bloom_filter, tokenbf_v1)."
    ),
    StructureCheckType.PROJECTIONS: "Lists projection parts of the table.",
    StructureCheckType.GRANULES_SETTINGS: "Shows granule settings (SHOW CREATE TABLE).",
}


def escape_single_quotes(value: str) -> str:
    return value.replace("'", "\\'")


def escape_identifier(value: str) -> str:
    """Backtick-quote identifiers that are empty or contain whitespace, quotes or ';'."""
    if not value or any(ch in value for ch in " \t\n\r\"'`;"):
        return "`" + value.replace("`", "``") + "`"
    return value


def structure_query(check_type: StructureCheckType | str, database: str, table: str) -> str:
    try:
        kind = StructureCheckType(check_type)
    except ValueError:
        raise ConfigError(f"unknown structure check type: {check_type}") from None

    db = escape_single_quotes(database)
    tbl = escape_single_quotes(table)
    match kind:
        case StructureCheckType.PARTITIONS:
            return (
                "SELECT partition, sum(rows) AS rows, sum(bytes_on_disk) AS bytes "
                f"FROM system.parts WHERE database = '{db}' AND table = '{tbl}' AND active "
                "GROUP BY partition ORDER BY partition"
            )
        case StructureCheckType.INDEXES:
            return (
                "SELECT name, type, expr, granularity FROM system.data_skipping_indices "
                f"WHERE database = '{db}' AND table = '{tbl}'"
            )
        case StructureCheckType.PROJECTIONS:
            return (
                "SELECT name, partition, part_type, rows FROM system.projection_parts "
                f"WHERE database = '{db}' AND table = '{tbl}'"
            )
        case StructureCheckType.GRANULES_SETTINGS:
            return f"SHOW CREATE TABLE {escape_identifier(database)}.{escape_identifier(table)}"


def structure_description(check_type: StructureCheckType | str) -> str:
    try:
        return _STRUCTURE_DESCRIPTIONS[StructureCheckType(check_type)]
    except ValueError:
        return ""


def substitute_query_params(
    query: str,
    full_table: str,
    params: TestParams,
    include_time_offset: bool = True,
) -> str:
    """
    Replace ``$table_name$``, ``$projectCode$``, ``$appName$``, ``$namespace$``,
    ``$level$``, ``$text_token$`` and (optionally) ``$time_offset_ms$``.

    Stress mode leaves ``$time_offset_ms$`` in place so each call can get its
    own value.
    """
    replacements = {
        "$table_name$": full_table,
        "$projectCode$": params.project_code,
        "$appName$": params.app_name,
        "$namespace$": params.namespace,
        "$level$": params.level,
        "$text_token$": params.text_token,
    }
    if include_time_offset:
        replacements[TIME_OFFSET_PLACEHOLDER] = str(params.time_offset_ms)

    for token, value in replacements.items():
        query = query.replace(token, value)
    return query


def build_tasks(cfg: AppConfig) -> List[Task]:
    tasks: List[Task] = []
    ch = cfg.clickhouse

    for check in cfg.structure_checks:
        try:
            sql = structure_query(check.type, ch.database, ch.table_name)
        except ConfigError as exc:
            raise ConfigError(f"structure check {check.name!r}: {exc}") from exc
        tasks.append(
            Task(
                id=len(tasks) + 1,
                name=check.name,
                description=check.description or structure_description(check.type),
                kind=TaskKind.STRUCTURE,
                sql=sql,
            )
        )

    for template in cfg.query_templates:
        tasks.append(
            Task(
                id=len(tasks) + 1,
                name=template.name,
                description=template.description,
                kind=TaskKind.QUERY,
                sql=substitute_query_params(template.query, ch.full_table, cfg.test_params),
                options=TaskOptions(
                    collect_explain=template.collect_explain,
                    collect_stats=template.collect_stats,
                ),
            )
        )

    return tasks


def stress_query_by_name(cfg: AppConfig, name: str) -> str:
    """Template text for stress mode, with every token but the time offset substituted."""
    for template in cfg.query_templates:
        if template.name == name:
            return substitute_query_params(
                template.query,
                cfg.clickhouse.full_table,
                cfg.test_params,
                include_time_offset=False,
            )
    raise ConfigError(f"query template {name!r} not found")
