from __future__ import annotations

from pathlib import Path

import click
from alembic import command
from alembic.config import Config as AlembicConfig
from flask import Flask


def _project_root() -> Path:
    return Path(__file__).resolve().parents[1]


def to_sqlalchemy_url(raw_db_path: str | None) -> str:
    """Turn DB_PATH (a postgres URL or a bare sqlite file path) into a SQLAlchemy URL."""
    raw = (raw_db_path or "").strip()
    if not raw:
        raise RuntimeError("DB_PATH is not set for migrations.")
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    if raw.startswith(("postgresql://", "postgresql+", "sqlite://", "sqlite+pysqlite://")):
        return raw
    sqlite_path = Path(raw).expanduser().resolve()
    return f"sqlite:///{sqlite_path.as_posix()}"


def build_alembic_config(db_path: str) -> AlembicConfig:
    root = _project_root()
    alembic_ini = root / "alembic.ini"
    if not alembic_ini.exists():
        raise RuntimeError("alembic.ini not found at the project root.")

    alembic_cfg = AlembicConfig(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str((root / "migrations").as_posix()))
    alembic_cfg.set_main_option("sqlalchemy.url", to_sqlalchemy_url(db_path))
    return alembic_cfg


def register_db_cli(app: Flask) -> None:
    @app.cli.group("db")
    def db_group() -> None:
        """Orders schema migrations (Alembic)."""

    @db_group.command("upgrade")
    @click.argument("revision", required=False, default="head")
    def db_upgrade(revision: str) -> None:
        command.upgrade(build_alembic_config(app.config["DB_PATH"]), revision)
        app.logger.info("db_upgraded", extra={"revision": revision})
        click.echo(f"Upgraded to {revision}.")

    @db_group.command("downgrade")
    @click.argument("revision", required=False, default="-1")
    def db_downgrade(revision: str) -> None:
        command.downgrade(build_alembic_config(app.config["DB_PATH"]), revision)
        app.logger.info("db_downgraded", extra={"revision": revision})
        click.echo(f"Downgraded to {revision}.")

    @db_group.command("current")
    def db_current() -> None:
        command.current(build_alembic_config(app.config["DB_PATH"]), verbose=True)

    @db_group.command("stamp")
    @click.argument("revision", required=False, default="head")
    def db_stamp(revision: str) -> None:
        """Mark a schema created by DB_AUTO_INIT as being at REVISION."""
        command.stamp(build_alembic_config(app.config["DB_PATH"]), revision)
        click.echo(f"Stamped {revision}.")
