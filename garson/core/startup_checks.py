from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from garson.core.config import DATABASE_URL, ENV

logger = logging.getLogger(__name__)
MIGRATIONS_PREFIX = "[MIGRATIONS]"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _environment() -> str:
    return os.getenv("ENVIRONMENT", ENV).strip().lower()


def _is_production(env: str) -> bool:
    return env in {"prod", "production"}


def validate_database_environment(database_url: str = DATABASE_URL) -> None:
    if _is_production(_environment()) and database_url.startswith("sqlite"):
        logger.critical("%s SQLite is forbidden in production", MIGRATIONS_PREFIX)
        raise RuntimeError("SQLite is forbidden in production environment")


def _should_auto_apply(env: str) -> bool:
    flag = os.getenv("AUTO_APPLY_MIGRATIONS", "").strip().lower()
    if flag in _TRUE:
        return True
    if flag in _FALSE:
        return False
    return _is_production(env)


def _require_config(alembic_config_path: Path) -> None:
    if not alembic_config_path.exists():
        logger.critical("%s alembic config not found path=%s", MIGRATIONS_PREFIX, alembic_config_path)
        raise RuntimeError("alembic config not found")


def apply_migrations(*, alembic_config_path: Path) -> None:
    """Upgrade to head in a child process.

    Runs in production by default; AUTO_APPLY_MIGRATIONS forces it on or off.
    """
    env = _environment()
    if not _should_auto_apply(env):
        logger.info("%s auto migration skipped env=%s", MIGRATIONS_PREFIX, env)
        return

    _require_config(alembic_config_path)
    logger.info("%s applying migrations to head", MIGRATIONS_PREFIX)
    command = [sys.executable, "-m", "alembic", "-c", str(alembic_config_path), "upgrade", "head"]
    try:
        subprocess.run(command, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as exc:
        logger.critical(
            "%s migration apply failed returncode=%s stderr=%s",
            MIGRATIONS_PREFIX,
            exc.returncode,
            (exc.stderr or "").strip(),
        )
        raise RuntimeError("Automatic migration failed") from exc
    logger.info("%s migrations applied", MIGRATIONS_PREFIX)


def expected_heads(alembic_config_path: Path) -> set[str]:
    script_directory = ScriptDirectory.from_config(Config(str(alembic_config_path)))
    return set(script_directory.get_heads())


def current_heads(engine: Engine) -> set[str] | None:
    """Revisions stamped in the database, or None when it was never migrated."""
    with engine.connect() as connection:
        if "alembic_version" not in inspect(connection).get_table_names():
            return None
        rows = connection.exec_driver_sql("SELECT version_num FROM alembic_version").fetchall()
    return {row[0] for row in rows if row and row[0]}


def ensure_migrations_applied(*, engine: Engine, alembic_config_path: Path) -> None:
    if _environment() == "test":
        logger.info("%s skipped migration check in test environment", MIGRATIONS_PREFIX)
        return

    _require_config(alembic_config_path)
    wanted = expected_heads(alembic_config_path)
    stamped = current_heads(engine)
    if stamped is None:
        logger.critical("%s alembic_version table missing", MIGRATIONS_PREFIX)
        raise RuntimeError("Database has no migration state")
    if stamped != wanted:
        logger.critical(
            "%s pending migration detected current=%s expected=%s",
            MIGRATIONS_PREFIX,
            sorted(stamped),
            sorted(wanted),
        )
        raise RuntimeError("Pending migrations detected")
    logger.info("%s migration state verified", MIGRATIONS_PREFIX)


def prepare_database(*, engine: Engine, metadata, alembic_config_path: Path, database_url: str = DATABASE_URL) -> None:
    """Make the schema usable before the engine takes traffic.

    Local SQLite files are built straight from the models; shared databases
    must be at the alembic head.
    """
    validate_database_environment(database_url)
    if database_url.startswith("sqlite"):
        metadata.create_all(bind=engine)
        logger.info("%s sqlite schema created from models", MIGRATIONS_PREFIX)
        return
    apply_migrations(alembic_config_path=alembic_config_path)
    ensure_migrations_applied(engine=engine, alembic_config_path=alembic_config_path)
