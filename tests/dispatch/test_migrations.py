"""Runs the Alembic migrations against a throwaway SQLite database."""

from pathlib import Path

import sqlalchemy as sa
from alembic import command
from alembic.config import Config

ROOT = Path(__file__).resolve().parents[2]


def _alembic_config(db_path: Path) -> Config:
    config = Config(str(ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite+aiosqlite:///{db_path}")
    config.attributes["configure_logger"] = False
    return config


class TestMigrations:
    def test_upgrade_creates_deliveries_table(self, tmp_path: Path) -> None:
        db_path = tmp_path / "comms.db"

        command.upgrade(_alembic_config(db_path), "head")

        engine = sa.create_engine(f"sqlite:///{db_path}")
        try:
            inspector = sa.inspect(engine)
            columns = {c["name"] for c in inspector.get_columns("notification_deliveries")}
            indexes = {i["name"] for i in inspector.get_indexes("notification_deliveries")}
        finally:
            engine.dispose()

        assert {
            "id",
            "channel",
            "status",
            "provider_message_id",
            "retry_count",
            "max_retries",
            "next_retry_at",
            "cost",
            "archived_at",
        } <= columns
        assert any("next_retry_at" in name for name in indexes)

    def test_downgrade_drops_table(self, tmp_path: Path) -> None:
        db_path = tmp_path / "comms.db"
        config = _alembic_config(db_path)

        command.upgrade(config, "head")
        command.downgrade(config, "base")

        engine = sa.create_engine(f"sqlite:///{db_path}")
        try:
            assert "notification_deliveries" not in sa.inspect(engine).get_table_names()
        finally:
            engine.dispose()
