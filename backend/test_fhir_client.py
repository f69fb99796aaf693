from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qsl

import pytest

from conftest import FACILITY_ID, appointment, bundle, location, patient, practitioner
from epic.fhir_client import (
    SURGICAL_SERVICE_TYPE,
    FhirClient,
    extract_bundle_entries,
    extract_resource_id,
    find_participant_ref,
    is_valid_appointment,
)
from epic.models import FhirResult

def fake_token_manager(routes):
    """Token manager whose FHIR requests are answered from ``{path prefix: result}``"""
    async def request(facility_id, resource_path, method="GET", body=None):
        for prefix, result in routes.items():
            if resource_path.startswith(prefix):
                if isinstance(result, Exception):
                    raise result
                return result
        return FhirResult(None, "FHIR request failed: 404 Not Found")

    manager = MagicMock()
    manager.epic_fhir_request = AsyncMock(side_effect=request)
    return manager

def requested_paths(manager):
    return [c.args[1] for c in manager.epic_fhir_request.await_args_list]

class TestReferenceHelpers:
    """FHIR reference parsing"""

    def test_extract_resource_id(self):
        assert extract_resource_id("Patient/abc123") == "abc123"
        assert extract_resource_id("abc123") is None

    def test_find_participant_ref(self):
        appt = appointment()
        assert find_participant_ref(appt, "Patient") == "pat-001"
        assert find_participant_ref(appt, "Practitioner") == "prac-001"
        assert find_participant_ref(appt, "Location") == "loc-001"
        assert find_participant_ref(appointment(location=None), "Location") is None

    def test_bundle_entries(self):
        assert extract_bundle_entries(None) == []
        assert extract_bundle_entries({"resourceType": "Bundle"}) == []
        assert extract_bundle_entries(bundle(patient())) == [patient()]

    def test_valid_appointment(self):
        assert is_valid_appointment(appointment())
        assert not is_valid_appointment({"id": "x", "status": "booked"})
        assert not is_valid_appointment({"status": "booked", "participant": [{}]})

class TestSearchSurgicalAppointments:
    """Appointment search"""

    @pytest.mark.asyncio
    async def test_query_parameters(self):
        manager = fake_token_manager({"Appointment?": FhirResult(bundle(), None)})
        client = FhirClient(manager)

        await client.search_surgical_appointments(FACILITY_ID, "2026-03-01", "2026-03-31", practitioner_id="prac-001")

        path = requested_paths(manager)[0]
        resource, query = path.split("?", 1)
        assert resource == "Appointment"
        params = parse_qsl(query)
        assert ("date", "ge2026-03-01") in params
        assert ("date", "le2026-03-31") in params
        assert ("service-type", SURGICAL_SERVICE_TYPE) in params
        assert ("_count", "100") in params
        assert ("practitioner", "Practitioner/prac-001") in params

    @pytest.mark.asyncio
    async def test_filters_invalid_and_inactive(self):
        invalid = {"resourceType": "Appointment", "id": "bad", "status": "booked"}
        manager = fake_token_manager({"Appointment?": FhirResult(bundle(
            appointment("appt-001"),
            appointment("appt-002", status="cancelled"),
            appointment("appt-003", status="pending"),
            invalid,
        ), None)})

        appointments, error = await FhirClient(manager).search_surgical_appointments(FACILITY_ID, "2026-03-01", "2026-03-31")

        assert error is None
        assert [a["id"] for a in appointments] == ["appt-001", "appt-003"]

    @pytest.mark.asyncio
    async def test_error_returns_empty_list(self):
        manager = fake_token_manager({"Appointment?": FhirResult(None, "Epic token has expired. Please reconnect.")})
        appointments, error = await FhirClient(manager).search_surgical_appointments(FACILITY_ID, "2026-03-01", "2026-03-31")
        assert appointments == []
        assert error == "Epic token has expired. Please reconnect."

class TestDirectorySearch:
    """Practitioner and location listings"""

    @pytest.mark.asyncio
    async def test_search_practitioners(self):
        manager = fake_token_manager({"Practitioner?": FhirResult(bundle(practitioner()), None)})
        practitioners, error = await FhirClient(manager).search_practitioners(FACILITY_ID, name="Smith")
        assert error is None
        assert practitioners[0]["id"] == "prac-001"
        assert ("name", "Smith") in parse_qsl(requested_paths(manager)[0].split("?", 1)[1])

    @pytest.mark.asyncio
    async def test_search_locations_error(self):
        manager = fake_token_manager({"Location?": FhirResult(None, "FHIR request failed: 403 Forbidden")})
        locations, error = await FhirClient(manager).search_locations(FACILITY_ID)
        assert locations == []
        assert error == "FHIR request failed: 403 Forbidden"

class TestResolveAppointmentDetails:
    """Concurrent resolution of referenced resources"""

    @pytest.mark.asyncio
    async def test_resolves_all_references(self):
        manager = fake_token_manager({
            "Patient/": FhirResult(patient(), None),
            "Practitioner/": FhirResult(practitioner(), None),
            "Location/": FhirResult(location(), None),
        })

        resolved = await FhirClient(manager).resolve_appointment_details(FACILITY_ID, appointment())

        assert resolved.patient["id"] == "pat-001"
        assert resolved.practitioner["id"] == "prac-001"
        assert resolved.location["name"] == "OR 1"
        assert sorted(requested_paths(manager)) == ["Location/loc-001", "Patient/pat-001", "Practitioner/prac-001"]

    @pytest.mark.asyncio
    async def test_skips_absent_references(self):
        manager = fake_token_manager({"Patient/": FhirResult(patient(), None)})

        resolved = await FhirClient(manager).resolve_appointment_details(
            FACILITY_ID, appointment(practitioner=None, location=None)
        )

        assert requested_paths(manager) == ["Patient/pat-001"]
        assert resolved.practitioner is None
        assert resolved.location is None

    @pytest.mark.asyncio
    async def test_no_participants_makes_no_requests(self):
        manager = fake_token_manager({"Patient/": FhirResult(patient(), None)})
        appt = appointment(patient=None, practitioner=None, location=None)

        resolved = await FhirClient(manager).resolve_appointment_details(FACILITY_ID, appt)

        manager.epic_fhir_request.assert_not_awaited()
        assert resolved.appointment is appt
        assert (resolved.patient, resolved.practitioner, resolved.location) == (None, None, None)

    @pytest.mark.asyncio
    async def test_failures_are_independent(self):
        manager = fake_token_manager({
            "Patient/": FhirResult(None, "FHIR request failed: 404 Not Found"),
            "Practitioner/": RuntimeError("connection reset"),
            "Location/": FhirResult(location(), None),
        })

        resolved = await FhirClient(manager).resolve_appointment_details(FACILITY_ID, appointment())

        assert resolved.patient is None
        assert resolved.practitioner is None
        assert resolved.location["id"] == "loc-001"
        assert resolved.appointment["id"] == "appt-001"
