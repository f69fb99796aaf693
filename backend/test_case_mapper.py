from unittest.mock import AsyncMock, patch

import pytest

from conftest import FACILITY_ID, appointment, location, make_connection, patient, practitioner
from database import DALResult
from epic.case_mapper import CaseMapper, applied_field_mappings, find_entity_mapping
from epic.models import MappingType, PreviewStatus, ResolvedAppointment

def entity_mappings(surgeon="surgeon-1", room="room-1", procedure="proc-1"):
    rows = []
    if surgeon:
        rows.append({'mapping_type': "surgeon", 'epic_resource_id': "prac-001", 'orbit_entity_id': surgeon})
    if room:
        rows.append({'mapping_type': "room", 'epic_resource_id': "loc-001", 'orbit_entity_id': room})
    if procedure:
        rows.append({'mapping_type': "procedure", 'epic_resource_id': "Total Knee Replacement", 'orbit_entity_id': procedure})
    return rows

def resolved_appointment(**appointment_overrides):
    return ResolvedAppointment(
        appointment=appointment(**appointment_overrides),
        patient=patient(),
        practitioner=practitioner(),
        location=location(),
    )

class TestMappingHelpers:
    """Lookup helpers"""

    def test_find_entity_mapping_matches_type_and_id(self):
        rows = entity_mappings()
        assert find_entity_mapping(rows, MappingType.ROOM, "loc-001")['orbit_entity_id'] == "room-1"
        assert find_entity_mapping(rows, MappingType.SURGEON, "loc-001") is None

    def test_applied_field_mappings_snapshot(self):
        snapshot = applied_field_mappings([
            {'fhir_resource_type': "Patient", 'fhir_field_path': "birthDate", 'orbit_table': "patients", 'orbit_column': "date_of_birth"}
        ])
        assert snapshot == {"Patient.birthDate": "patients.date_of_birth"}

class TestMapAppointmentToPreview:
    """Preview construction"""

    def setup_method(self):
        self.mapper = CaseMapper(dal=None, local_db=None)

    def test_ready_preview(self):
        preview = self.mapper.map_appointment_to_preview(resolved_appointment(), entity_mappings(), set())

        assert preview.status == PreviewStatus.READY
        assert preview.missing_mappings == []
        assert preview.fhir_appointment_id == "appt-001"
        assert preview.scheduled_date == "2026-03-15"
        assert preview.start_time == "07:30:00"
        assert preview.patient_name == "Doe, Jane"
        assert preview.patient_mrn == "MRN-12345"
        assert preview.patient_dob == "1970-05-20"
        assert preview.surgeon_name == "Smith, John"
        assert preview.surgeon_id == "surgeon-1"
        assert preview.room_name == "OR 1"
        assert preview.room_id == "room-1"
        assert preview.procedure_name == "Total Knee Replacement"
        assert preview.procedure_type_id == "proc-1"
        assert preview.to_dict()["status"] == "ready"

    def test_missing_room_mapping(self):
        preview = self.mapper.map_appointment_to_preview(resolved_appointment(), entity_mappings(room=None), set())
        assert preview.status == PreviewStatus.MISSING_MAPPINGS
        assert preview.missing_mappings == ["room"]

    def test_missing_surgeon_and_room(self):
        preview = self.mapper.map_appointment_to_preview(
            resolved_appointment(), entity_mappings(surgeon=None, room=None), set()
        )
        assert preview.missing_mappings == ["surgeon", "room"]

    def test_procedure_mapping_is_optional(self):
        preview = self.mapper.map_appointment_to_preview(resolved_appointment(), entity_mappings(procedure=None), set())
        assert preview.status == PreviewStatus.READY
        assert preview.procedure_type_id is None

    def test_unreferenced_location_is_not_missing(self):
        resolved = ResolvedAppointment(appointment=appointment(location=None), patient=patient(), practitioner=practitioner())
        preview = self.mapper.map_appointment_to_preview(resolved, entity_mappings(room=None), set())
        assert preview.status == PreviewStatus.READY
        assert preview.room_name is None

    def test_already_imported_wins(self):
        preview = self.mapper.map_appointment_to_preview(resolved_appointment(), entity_mappings(room=None), {"appt-001"})
        assert preview.status == PreviewStatus.ALREADY_IMPORTED
        assert preview.missing_mappings == ["room"]

    def test_unresolved_resources_fall_back_to_participant_display(self):
        resolved = ResolvedAppointment(appointment=appointment())
        preview = self.mapper.map_appointment_to_preview(resolved, entity_mappings(), set())
        assert preview.surgeon_name == "Dr. Smith"
        assert preview.room_name == "OR 1"
        assert preview.surgeon_id == "surgeon-1"
        assert preview.patient_name is None
        assert preview.patient_mrn is None

class TestCreateCaseFromImport:
    """Patient and case creation for an imported appointment"""

    async def setup(self, dal, local_db, resolved=None):
        self.connection = await make_connection(dal, status="connected")
        self.status_id, _ = await local_db.get_case_status_id("scheduled")
        local_db.add_facility_milestone(FACILITY_ID, "Patient In", 1)
        local_db.add_facility_milestone(FACILITY_ID, "Incision", 2)
        self.mapper = CaseMapper(dal, local_db)
        self.preview = self.mapper.map_appointment_to_preview(resolved or resolved_appointment(), entity_mappings(), set())

    async def create(self):
        return await self.mapper.create_case_from_import(
            FACILITY_ID, self.connection['id'], self.preview, "user-1", self.status_id
        )

    @pytest.mark.asyncio
    async def test_creates_patient_case_and_log(self, dal, local_db):
        await self.setup(dal, local_db)

        result = await self.create()

        assert result.success is True
        assert result.error is None
        case, _ = await local_db.get_case(result.case_id)
        assert case['case_number'] == "EPIC-appt-001"
        assert case['source'] == "epic"
        assert case['scheduled_date'] == "2026-03-15"
        assert case['start_time'] == "07:30:00"
        assert case['surgeon_id'] == "surgeon-1"
        assert case['or_room_id'] == "room-1"
        assert case['procedure_type_id'] == "proc-1"
        assert case['status_id'] == self.status_id
        assert case['patient_id'] == result.patient_id
        assert case['created_by'] == "user-1"

        milestones, _ = await local_db.list_case_milestones(result.case_id)
        assert len(milestones) == 2

        existing, _ = await local_db.find_patient_by_mrn(FACILITY_ID, "MRN-12345")
        assert existing['id'] == result.patient_id
        assert existing['first_name'] == "Jane"
        assert existing['last_name'] == "Doe"

        entry, _ = await dal.check_duplicate_import(FACILITY_ID, "appt-001")
        assert entry['orbit_case_id'] == result.case_id
        assert entry['fhir_resource_snapshot']['appointment']['id'] == "appt-001"
        assert entry['field_mapping_applied']["Patient.birthDate"] == "patients.date_of_birth"

    @pytest.mark.asyncio
    async def test_reuses_patient_by_mrn(self, dal, local_db):
        await self.setup(dal, local_db)
        known, _ = await local_db.create_patient({'facility_id': FACILITY_ID, 'mrn': "MRN-12345", 'last_name': "Doe"})

        result = await self.create()

        assert result.success is True
        assert result.patient_id == known['id']
        assert local_db.count_patients(FACILITY_ID) == 1

    @pytest.mark.asyncio
    async def test_case_without_patient(self, dal, local_db):
        resolved = ResolvedAppointment(appointment=appointment(), practitioner=practitioner(), location=location())
        await self.setup(dal, local_db, resolved=resolved)

        result = await self.create()

        assert result.success is True
        assert result.patient_id is None
        assert local_db.count_patients(FACILITY_ID) == 0

    @pytest.mark.asyncio
    async def test_duplicate_case_number_fails(self, dal, local_db):
        await self.setup(dal, local_db)
        first = await self.create()
        assert first.success is True

        second = await self.create()

        assert second.success is False
        assert second.error.startswith("Case creation failed: ")

    @pytest.mark.asyncio
    async def test_log_write_failure_does_not_fail_import(self, dal, local_db):
        await self.setup(dal, local_db)
        failing_log = AsyncMock(return_value=DALResult(None, "Database operation failed: database is locked"))

        with patch.object(dal, "create_import_log_entry", failing_log):
            result = await self.create()

        # The case exists and the import reports success; only the log entry is lost
        assert result.success is True
        case, _ = await local_db.get_case(result.case_id)
        assert case is not None
        failing_log.assert_awaited_once()
        imported, _ = await dal.get_imported_appointment_ids(FACILITY_ID)
        assert imported == set()

    @pytest.mark.asyncio
    async def test_patient_creation_failure(self, dal, local_db):
        await self.setup(dal, local_db)

        with patch.object(local_db, "create_patient", AsyncMock(return_value=DALResult(None, "disk full"))):
            result = await self.create()

        assert result.success is False
        assert result.error == "Patient creation failed: disk full"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_reported(self, dal, local_db):
        await self.setup(dal, local_db)

        with patch.object(local_db, "create_case_with_milestones", AsyncMock(side_effect=RuntimeError("boom"))):
            result = await self.create()

        assert result.success is False
        assert result.error == "boom"
