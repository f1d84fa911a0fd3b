"""Logical database dumps and restores for MySQL/MariaDB and PostgreSQL."""
from __future__ import annotations

import os
import re
from datetime import datetime
from pathlib import Path

from .config import DatabaseConfig, ToolsConfig
from .steps import StepRunner, StepState

DUMP_HEADERS = ("MySQL dump", "MariaDB dump", "PostgreSQL database dump")
HEADER_LINES = 10
_SAFE_DB_NAME = re.compile(r"^[A-Za-z0-9_$-]+$")


class DatabaseError(RuntimeError):
    """Raised when a dump or restore cannot be performed."""


def dump_filename(prefix: str, timestamp: datetime) -> str:
    """Return ``<prefix>_db_<YYYYMMDD_HHMMSS>.sql``."""
    return f"{prefix}_db_{timestamp:%Y%m%d_%H%M%S}.sql"


def _client_env(database: DatabaseConfig) -> dict[str, str]:
    # Passwords travel via the environment so they never appear in argv.
    if not database.password:
        return {}
    if database.is_postgres:
        return {"PGPASSWORD": database.password}
    return {"MYSQL_PWD": database.password}


def _mysql_connection_args(database: DatabaseConfig) -> list[str]:
    return ["-h", database.host, "-P", str(database.port), "-u", database.user]


def _pg_connection_args(database: DatabaseConfig) -> list[str]:
    return ["-h", database.host, "-p", str(database.port), "-U", database.user]


def _checked_name(database: DatabaseConfig) -> str:
    if not _SAFE_DB_NAME.match(database.name):
        raise DatabaseError(f"Refusing to operate on database with unsafe name {database.name!r}.")
    return database.name


def dump_command(database: DatabaseConfig, tools: ToolsConfig) -> list[str]:
    """Return the argv producing a full logical dump on stdout."""
    if database.is_postgres:
        return [tools.pg_dump, *_pg_connection_args(database), "--no-owner", database.name]
    return [
        tools.mysqldump,
        "--single-transaction",
        "--quick",
        "--lock-tables=false",
        *_mysql_connection_args(database),
        database.name,
    ]


def dump_database(
    runner: StepRunner,
    database: DatabaseConfig,
    tools: ToolsConfig,
    destination: Path,
) -> Path | None:
    """Dump the database into ``destination`` (mode 0600)."""
    if not runner.dry_run:
        destination.parent.mkdir(parents=True, exist_ok=True)
    result = runner.command(
        "database.dump",
        dump_command(database, tools),
        env=_client_env(database),
        stdout_path=destination,
    )
    if result is None:
        return None
    os.chmod(destination, 0o600)
    if destination.stat().st_size == 0:
        raise DatabaseError(f"Database dump is empty: {destination}")
    return destination


def recreate_database(runner: StepRunner, database: DatabaseConfig, tools: ToolsConfig) -> None:
    """Drop and recreate the configured database."""
    name = _checked_name(database)
    env = _client_env(database)
    if database.is_postgres:
        base = [tools.psql, *_pg_connection_args(database), "-d", "postgres", "-v", "ON_ERROR_STOP=1"]
        runner.command("database.drop", [*base, "-c", f'DROP DATABASE IF EXISTS "{name}";'], env=env)
        runner.command(
            "database.create",
            [*base, "-c", f'CREATE DATABASE "{name}" OWNER "{database.user}";'],
            env=env,
        )
        return
    statement = (
        f"DROP DATABASE IF EXISTS `{name}`; "
        f"CREATE DATABASE `{name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_general_ci;"
    )
    runner.command(
        "database.recreate",
        [tools.mysql, *_mysql_connection_args(database), "-e", statement],
        env=env,
    )


def import_database(
    runner: StepRunner,
    database: DatabaseConfig,
    tools: ToolsConfig,
    dump: Path,
) -> None:
    """Load ``dump`` into the configured database."""
    env = _client_env(database)
    if database.is_postgres:
        runner.command(
            "database.import",
            [
                tools.psql,
                *_pg_connection_args(database),
                "-d",
                database.name,
                "-v",
                "ON_ERROR_STOP=1",
                "-f",
                str(dump),
            ],
            env=env,
        )
        return
    runner.command(
        "database.import",
        [tools.mysql, *_mysql_connection_args(database), database.name],
        env=env,
        stdin_path=dump,
    )


def optimize_database(
    runner: StepRunner,
    database: DatabaseConfig,
    tools: ToolsConfig,
) -> tuple[list[str], list[str]]:
    """Run ``OPTIMIZE TABLE`` on every table; return ``(optimized, failed)``."""
    if database.is_postgres:
        raise DatabaseError("Table optimisation is only supported for MySQL/MariaDB.")
    env = _client_env(database)
    base = [tools.mysql, *_mysql_connection_args(database), _checked_name(database)]
    listing = runner.command("database.tables", [*base, "-N", "-e", "SHOW TABLES;"], env=env)
    tables = (listing.stdout or "").split() if listing is not None else []

    optimized: list[str] = []
    failed: list[str] = []
    for table in tables:
        step = f"database.optimize.{table}"
        if not _SAFE_DB_NAME.match(table):
            runner.skip(step, "unsafe table name")
            failed.append(table)
            continue
        runner.command(step, [*base, "-e", f"OPTIMIZE TABLE `{table}`;"], env=env, optional=True)
        if runner.state_of(step) is StepState.SUCCEEDED:
            optimized.append(table)
        else:
            failed.append(table)
    return optimized, failed


def find_dump(backup_dir: Path) -> Path | None:
    """Return the SQL dump stored in ``backup_dir/database``, if any."""
    database_dir = backup_dir / "database"
    if not database_dir.is_dir():
        return None
    dumps = sorted(database_dir.glob("*.sql"))
    return dumps[-1] if dumps else None


def inspect_dump(path: Path, table_prefix: str = "oc_") -> list[str]:
    """Return warnings about a dump that does not look like a Nextcloud database."""
    warnings: list[str] = []
    create_table = re.compile(
        r"CREATE TABLE\s+(?:IF NOT EXISTS\s+)?(?:[`\"]?\w+[`\"]?\.)?[`\"]?"
        + re.escape(table_prefix),
        re.IGNORECASE,
    )
    header_found = False
    table_found = False
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for number, line in enumerate(handle, start=1):
            if number <= HEADER_LINES and any(marker in line for marker in DUMP_HEADERS):
                header_found = True
            if create_table.search(line):
                table_found = True
            if table_found and (header_found or number > HEADER_LINES):
                break
    if not header_found:
        warnings.append(f"{path.name}: no MySQL/MariaDB/PostgreSQL dump header found")
    if not table_found:
        warnings.append(f"{path.name}: no CREATE TABLE statements for prefix '{table_prefix}'")
    return warnings


__all__ = [
    "DatabaseError",
    "dump_command",
    "dump_database",
    "dump_filename",
    "find_dump",
    "import_database",
    "inspect_dump",
    "optimize_database",
    "recreate_database",
]
