"""
Global pytest configuration and fixtures for CrisisGate testing.
"""
import tempfile
from pathlib import Path
from typing import Any, Dict

import pytest

from crisisgate.core.database import DatabaseManager
from crisisgate.models.entities import CallerIdentity, UserRole
from crisisgate.services.dispatch.broadcaster import EventBroadcaster
from crisisgate.services.dispatch.dispatch_service import DispatchService
from crisisgate.services.dispatch.repository import SQLiteRepositoryProvider


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config() -> Dict[str, Any]:
    """Provide test configuration."""
    return {
        "app": {"name": "CrisisGate", "version": "1.0.0", "debug": True, "log_level": "DEBUG"},
        "dispatch": {
            "max_retries": 3,
            "search_radii_meters": [1000, 5000, 20000, "unbounded"],
            "auto_assign": "none",
            "nearby_default_radius_meters": 5000,
            "default_page_size": 10,
            "max_page_size": 100
        },
        "geo_index": {"cell_size_degrees": 1.0},
        "broadcaster": {"max_queue_size": 0},
        "logging": {"level": "DEBUG", "file": None, "console": False}
    }


@pytest.fixture
def database(temp_dir):
    """Create a migrated test SQLite database."""
    db = DatabaseManager(str(temp_dir / "test.db"), max_connections=8)
    yield db
    db.close()


@pytest.fixture
def repositories(database):
    return SQLiteRepositoryProvider(database)


@pytest.fixture
def broadcaster():
    broadcaster = EventBroadcaster()
    yield broadcaster
    broadcaster.close()


@pytest.fixture
async def service(database, test_config):
    """A started dispatch service over the test database."""
    service = DispatchService(database, test_config)
    await service.start()
    yield service
    await service.stop()


@pytest.fixture
def dispatcher():
    return CallerIdentity(user_id="dispatcher-1", role=UserRole.RESPONDER)


@pytest.fixture
def admin():
    return CallerIdentity(user_id="admin-1", role=UserRole.ADMIN)


@pytest.fixture
def reporter():
    return CallerIdentity(user_id="reporter-1", role=UserRole.USER)


@pytest.fixture
def sos_payload():
    """Medical SOS in Bengaluru."""
    return {
        "type": "medical",
        "priority": "critical",
        "location": {"type": "Point", "coordinates": [77.59, 12.97]},
        "description": "Elderly person collapsed, not responding",
        "peopleCount": 1,
        "medicalInfo": {"hasInjuries": True, "requiresMedical": True}
    }


@pytest.fixture
def team_payload():
    return {
        "name": "Rapid Response 1",
        "members": ["resp-1", "resp-2"],
        "vehicle": "Ambulance KA-01",
        "location": [77.60, 12.98],
        "capabilities": ["medical", "rescue"]
    }


@pytest.fixture
def shelter_payload():
    return {
        "name": "Community Hall",
        "type": "emergency",
        "location": [77.58, 12.96],
        "capacity": 50,
        "currentOccupancy": 10,
        "hasMedical": True,
        "facilities": ["beds", "food", "water", "medical"],
        "contactInfo": {"phone": "+919800000000", "email": "hall@example.org"}
    }
