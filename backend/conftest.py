import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

os.environ["PYTEST_RUNNING"] = "true"

from database import DatabaseManager
from epic.audit import EpicAuditLogger
from epic.dal import EpicDAL
from http_client import HTTPClientManager
from local_db import LocalDatabase

FACILITY_ID = "facility-1"
FHIR_BASE_URL = "https://fhir.example.org/api/FHIR/R4"
FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(db_path=str(tmp_path / "epic_test.db"), max_connections=4)
    yield manager
    manager.close()

@pytest.fixture
def dal(db):
    return EpicDAL(db)

@pytest.fixture
def local_db(db):
    return LocalDatabase(db)

@pytest.fixture
def audit(db):
    return EpicAuditLogger(db)

@pytest.fixture
def sleep():
    return AsyncMock()

def audit_actions(db: DatabaseManager) -> List[str]:
    return [row['action'] for row in db.execute_query("SELECT action FROM audit_log ORDER BY created_at")]

async def make_connection(
    dal: EpicDAL,
    facility_id: str = FACILITY_ID,
    status: Optional[str] = None,
    access_token: Optional[str] = None,
    expires_in: Optional[timedelta] = None
) -> Dict[str, Any]:
    """Connection row with an optional token expiring ``expires_in`` from ``FIXED_NOW``"""
    connection, error = await dal.upsert_connection(facility_id, FHIR_BASE_URL, "client-1", status=status)
    assert error is None
    if access_token:
        updates = {'access_token': access_token}
        if expires_in is not None:
            updates['token_expires_at'] = (FIXED_NOW + expires_in).isoformat()
        _, error = await dal.update_connection(facility_id, updates)
        assert error is None
        connection, _ = await dal.get_connection(facility_id)
    return connection

def mock_http(handler: Callable[[httpx.Request], Any]) -> HTTPClientManager:
    return HTTPClientManager(transport=httpx.MockTransport(handler))

# FHIR resource builders

def appointment(
    appointment_id: str = "appt-001",
    start: str = "2026-03-15T07:30:00-05:00",
    status: str = "booked",
    patient: Optional[str] = "pat-001",
    practitioner: Optional[str] = "prac-001",
    location: Optional[str] = "loc-001",
    service_type: Optional[str] = "Total Knee Replacement"
) -> Dict[str, Any]:
    participants = []
    if patient:
        participants.append({"actor": {"reference": f"Patient/{patient}", "display": "Doe, Jane"}})
    if practitioner:
        participants.append({"actor": {"reference": f"Practitioner/{practitioner}", "display": "Dr. Smith"}})
    if location:
        participants.append({"actor": {"reference": f"Location/{location}", "display": "OR 1"}})
    resource = {
        "resourceType": "Appointment",
        "id": appointment_id,
        "status": status,
        "start": start,
        "participant": participants,
    }
    if service_type:
        resource["serviceType"] = [{"text": service_type}]
    return resource

def patient(patient_id: str = "pat-001", mrn: Optional[str] = "MRN-12345") -> Dict[str, Any]:
    resource = {
        "resourceType": "Patient",
        "id": patient_id,
        "name": [{"use": "official", "family": "Doe", "given": ["Jane"]}],
        "birthDate": "1970-05-20",
    }
    if mrn:
        resource["identifier"] = [{"type": {"coding": [{"code": "MR"}]}, "value": mrn}]
    return resource

def practitioner(practitioner_id: str = "prac-001", family: str = "Smith", given: str = "John") -> Dict[str, Any]:
    return {
        "resourceType": "Practitioner",
        "id": practitioner_id,
        "name": [{"family": family, "given": [given]}],
    }

def location(location_id: str = "loc-001", name: str = "OR 1") -> Dict[str, Any]:
    return {"resourceType": "Location", "id": location_id, "name": name}

def bundle(*resources: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "total": len(resources),
        "entry": [{"resource": r} for r in resources],
    }
