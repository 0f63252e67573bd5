"""
Tests for the migration runner.

Alembic and the database are patched out; these tests cover URL handling,
the upgrade decision and exit codes.
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from app.db import migration_runner
from app.db.migration_runner import (
    MigrationError,
    MigrationStatus,
    get_sync_database_url,
    main,
    run_migrations,
)

UP_TO_DATE = MigrationStatus(current_revision="0001", head_revision="0001")
BEHIND = MigrationStatus(current_revision=None, head_revision="0001")


class TestSyncDatabaseUrl:
    def test_asyncpg_rewritten_to_psycopg2(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db:5432/ledger")

        assert get_sync_database_url() == "postgresql+psycopg2://u:p@db:5432/ledger"

    def test_sync_url_unchanged(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg2://u:p@db/ledger")

        assert get_sync_database_url() == "postgresql+psycopg2://u:p@db/ledger"


class TestMigrationStatus:
    def test_pending(self):
        assert BEHIND.pending is True
        assert UP_TO_DATE.pending is False


class TestRunMigrations:
    def test_up_to_date_skips_upgrade(self):
        with (
            patch.object(migration_runner, "check_migrations_status", return_value=UP_TO_DATE),
            patch.object(migration_runner.command, "upgrade") as upgrade,
        ):
            status = run_migrations()

        upgrade.assert_not_called()
        assert status == UP_TO_DATE

    def test_behind_upgrades_to_head(self):
        with (
            patch.object(
                migration_runner, "check_migrations_status", side_effect=[BEHIND, UP_TO_DATE]
            ),
            patch.object(migration_runner.command, "upgrade") as upgrade,
        ):
            status = run_migrations()

        assert upgrade.call_args.args[1] == "head"
        assert status == UP_TO_DATE

    def test_upgrade_failure(self):
        with (
            patch.object(migration_runner, "check_migrations_status", return_value=BEHIND),
            patch.object(
                migration_runner.command,
                "upgrade",
                side_effect=OperationalError("CREATE TABLE", {}, Exception("down")),
            ),
        ):
            with pytest.raises(MigrationError, match="Database migration failed"):
                run_migrations()


class TestMain:
    def test_status_up_to_date(self, capsys):
        with patch.object(migration_runner, "check_migrations_status", return_value=UP_TO_DATE):
            assert main(["status"]) == 0

        assert "pending=False" in capsys.readouterr().out

    def test_status_pending(self):
        with patch.object(migration_runner, "check_migrations_status", return_value=BEHIND):
            assert main(["status"]) == 1

    def test_upgrade(self):
        with patch.object(migration_runner, "run_migrations", return_value=UP_TO_DATE) as run:
            assert main([]) == 0

        run.assert_called_once_with()

    def test_failure_exit_code(self, capsys):
        with patch.object(
            migration_runner, "run_migrations", side_effect=MigrationError("unreachable")
        ):
            assert main([]) == 2

        assert "unreachable" in capsys.readouterr().err
