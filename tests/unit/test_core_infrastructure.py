"""
Unit tests for the core infrastructure: error serialization, storage
maintenance helpers, logging helpers and application bootstrap
"""

import logging
import sqlite3

import pytest

from crisisgate.core.errors import (
    ConflictError, InvalidTransitionError, NotFoundError, ValidationError, VersionConflictError
)
from crisisgate.core.logging import CrisisGateLogger, LogContext, get_structured_logger, log_async_function_call
from crisisgate.main import CrisisGateApplication
from crisisgate.models.entities import GeoPoint, Team


class TestErrorSerialization:
    """Errors expose a stable dictionary shape"""

    def test_validation_error_names_field(self):
        error = ValidationError("Latitude out of range", field='location')

        assert error.to_dict() == {
            'error': 'validation_error',
            'message': 'Latitude out of range',
            'details': {'field': 'location'}
        }

    def test_not_found_carries_kind_and_id(self):
        details = NotFoundError("team", "t-1").to_dict()['details']

        assert details == {'kind': 'team', 'id': 't-1'}

    def test_invalid_transition_carries_states(self):
        error = InvalidTransitionError("resolved", "pending")

        assert error.current == "resolved"
        assert error.to_dict()['details'] == {'current': 'resolved', 'attempted': 'pending'}

    def test_version_conflict_is_a_conflict(self):
        error = VersionConflictError("sos_request", "r-1", 4)

        assert isinstance(error, ConflictError)
        assert error.to_dict()['error'] == 'version_conflict'
        assert error.to_dict()['details']['expected_version'] == 4


class TestDatabaseMaintenance:
    """Stats and backup over a migrated database"""

    def test_migrations_recorded(self, database):
        rows = database.execute_query("SELECT version FROM migrations")

        assert len(rows) == len(database.migrations)

    def test_stats_count_every_table(self, database, repositories):
        repositories.teams.create(Team(name="Medics", location=GeoPoint(77.6, 12.98)))

        stats = database.get_stats()

        assert stats['teams'] == 1
        assert stats['sos_requests'] == 0
        assert stats['database_size_bytes'] > 0

    def test_backup_copies_rows(self, database, repositories, temp_dir):
        team = repositories.teams.create(Team(name="Medics", location=GeoPoint(77.6, 12.98)))

        backup_path = database.backup_database(str(temp_dir / "backups" / "copy.db"))

        with sqlite3.connect(backup_path) as conn:
            rows = conn.execute("SELECT id FROM teams").fetchall()
        assert rows == [(team.id,)]


class TestLoggingHelpers:
    """Logger setup and helpers"""

    def test_file_logging_and_service_levels(self, temp_dir):
        log_file = temp_dir / "logs" / "crisisgate.log"
        root = logging.getLogger()
        saved = list(root.handlers), root.level
        try:
            manager = CrisisGateLogger({'logging': {
                'level': 'DEBUG',
                'file': str(log_file),
                'max_size': '1KB',
                'console': False,
                'services': {'dispatch': 'WARNING'}
            }})

            logger = manager.get_logger('dispatch')
            logger.warning("storage slow")

            assert logger.name == 'crisisgate.dispatch'
            assert logger.level == logging.WARNING
            assert manager.get_logger('crisisgate.matcher').name == 'crisisgate.matcher'
            assert log_file.exists()
        finally:
            for handler in root.handlers:
                if handler not in saved[0]:
                    handler.close()
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])
            logging.getLogger('crisisgate.dispatch').setLevel(logging.NOTSET)

    def test_log_context_binds_fields(self):
        logger = get_structured_logger('dispatch')

        with LogContext(logger, request_id="r-1", actor_id="u-1") as bound:
            assert bound._context == {'request_id': "r-1", 'actor_id': "u-1"}

    async def test_async_call_logging_reraises(self, caplog):
        logger = logging.getLogger('crisisgate.test')

        @log_async_function_call(logger)
        async def failing():
            raise ConflictError("team busy")

        with caplog.at_level(logging.DEBUG, logger='crisisgate.test'):
            with pytest.raises(ConflictError):
                await failing()

        assert "failing failed with error: team busy" in caplog.text


class TestApplication:
    """Application bootstrap and status"""

    async def test_initialize_and_status(self, temp_dir, monkeypatch):
        for name in ("CRISISGATE_DEBUG", "CRISISGATE_LOG_LEVEL", "CRISISGATE_MAX_RETRIES",
                     "CRISISGATE_SEARCH_RADII", "CRISISGATE_AUTO_ASSIGN"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("CRISISGATE_DB_PATH", str(temp_dir / "data" / "app.db"))
        monkeypatch.setattr("crisisgate.main.initialize_logging", lambda config: None)

        app = CrisisGateApplication(str(temp_dir))
        await app.initialize()
        try:
            await app.dispatch_service.start()
            app.running = True

            status = app.get_system_status()

            assert status['running'] is True
            assert status['dispatch']['strategy'] == "none"
            assert status['database']['sos_requests'] == 0
        finally:
            await app.shutdown()

        assert app.running is False
