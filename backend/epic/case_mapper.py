"""
Epic case mapper

Turns a resolved FHIR appointment into an import preview, and a preview into
a local patient and case. Field mappings are read from the database on every
import, so admin changes apply to the next import without a restart.
"""

from typing import Any, Dict, Iterable, List, Optional, Set

from local_db import LocalDatabase
from logging_config import ComponentLogger, get_component_logger

from .dal import EpicDAL
from .fhir_client import find_participant, find_participant_ref
from .fhir_fields import extract_mrn, extract_name, extract_service_type, format_name, iso_to_date, iso_to_time
from .models import (
    CaseImportPreview,
    CaseImportResult,
    ImportLogStatus,
    MappingType,
    PreviewStatus,
    ResolvedAppointment,
    case_number_for,
)

EPIC_SOURCE = "epic"

def find_entity_mapping(
    entity_mappings: Iterable[Dict[str, Any]],
    mapping_type: MappingType,
    epic_resource_id: str
) -> Optional[Dict[str, Any]]:
    for mapping in entity_mappings:
        if mapping.get('mapping_type') == mapping_type.value and mapping.get('epic_resource_id') == epic_resource_id:
            return mapping
    return None

def applied_field_mappings(field_mappings: Iterable[Dict[str, Any]]) -> Dict[str, str]:
    """``{"Appointment.start": "cases.scheduled_date", ...}`` snapshot for the import log"""
    return {
        f"{m['fhir_resource_type']}.{m['fhir_field_path']}": f"{m['orbit_table']}.{m['orbit_column']}"
        for m in field_mappings
    }

def _participant_display(appointment: Dict[str, Any], resource_type: str) -> Optional[str]:
    actor = find_participant(appointment, resource_type)
    return actor.get("display") if actor else None

class CaseMapper:
    def __init__(self, dal: EpicDAL, local_db: LocalDatabase, logger: Optional[ComponentLogger] = None):
        self.dal = dal
        self.local_db = local_db
        self.log = logger or get_component_logger("case-mapper")

    def map_appointment_to_preview(
        self,
        resolved: ResolvedAppointment,
        entity_mappings: List[Dict[str, Any]],
        imported_appointment_ids: Set[str]
    ) -> CaseImportPreview:
        """Preview of one appointment against the current mappings.

        Mapping lookups key off the appointment's own participant references,
        so a practitioner or location that failed to resolve can still be
        mapped. An already imported appointment is reported as such even when
        its mappings are incomplete.
        """
        appointment = resolved.appointment
        patient = resolved.patient

        epic_practitioner_id = find_participant_ref(appointment, "Practitioner")
        epic_location_id = find_participant_ref(appointment, "Location")

        patient_name = extract_name(patient.get("name")) if patient else None
        patient_mrn = extract_mrn(patient.get("identifier")) if patient else None

        surgeon_name = None
        if resolved.practitioner:
            surgeon_name = format_name(extract_name(resolved.practitioner.get("name")))
        if surgeon_name is None:
            surgeon_name = _participant_display(appointment, "Practitioner")

        room_name = (resolved.location or {}).get("name") or _participant_display(appointment, "Location")
        epic_service_type = extract_service_type(appointment)

        surgeon_mapping = (
            find_entity_mapping(entity_mappings, MappingType.SURGEON, epic_practitioner_id)
            if epic_practitioner_id else None
        )
        room_mapping = (
            find_entity_mapping(entity_mappings, MappingType.ROOM, epic_location_id)
            if epic_location_id else None
        )
        procedure_mapping = (
            find_entity_mapping(entity_mappings, MappingType.PROCEDURE, epic_service_type)
            if epic_service_type else None
        )

        surgeon_id = (surgeon_mapping or {}).get('orbit_entity_id')
        room_id = (room_mapping or {}).get('orbit_entity_id')

        # A missing procedure mapping does not block the import
        missing_mappings = []
        if epic_practitioner_id and not surgeon_id:
            missing_mappings.append(MappingType.SURGEON.value)
        if epic_location_id and not room_id:
            missing_mappings.append(MappingType.ROOM.value)

        if appointment.get("id") in imported_appointment_ids:
            status = PreviewStatus.ALREADY_IMPORTED
        elif missing_mappings:
            status = PreviewStatus.MISSING_MAPPINGS
        else:
            status = PreviewStatus.READY

        return CaseImportPreview(
            fhir_appointment_id=appointment.get("id"),
            scheduled_date=iso_to_date(appointment.get("start")),
            start_time=iso_to_time(appointment.get("start")),
            patient_name=format_name(patient_name) if patient_name else None,
            patient_mrn=patient_mrn,
            patient_dob=patient.get("birthDate") if patient else None,
            surgeon_name=surgeon_name,
            surgeon_id=surgeon_id,
            room_name=room_name,
            room_id=room_id,
            procedure_name=epic_service_type,
            procedure_type_id=(procedure_mapping or {}).get('orbit_entity_id'),
            epic_practitioner_id=epic_practitioner_id,
            epic_location_id=epic_location_id,
            epic_service_type=epic_service_type,
            status=status,
            missing_mappings=missing_mappings,
            resolved=resolved,
        )

    async def _resolve_patient(self, facility_id: str, preview: CaseImportPreview) -> CaseImportResult:
        """Existing patient by MRN, else a new one; ``patient_id`` stays None without a named patient"""
        patient = preview.resolved.patient
        if not patient:
            return CaseImportResult(success=True)

        name = extract_name(patient.get("name"))
        if not (name.given or name.family):
            return CaseImportResult(success=True)

        mrn = extract_mrn(patient.get("identifier"))
        if mrn:
            existing, _ = await self.local_db.find_patient_by_mrn(facility_id, mrn)
            if existing:
                self.log.info(
                    "Linked to existing patient by MRN",
                    context={"facility_id": facility_id, "patient_id": existing['id']}
                )
                return CaseImportResult(success=True, patient_id=existing['id'])

        created, error = await self.local_db.create_patient({
            'facility_id': facility_id,
            'first_name': name.given,
            'last_name': name.family,
            'mrn': mrn,
            'date_of_birth': patient.get("birthDate"),
        })
        if error:
            self.log.error("Failed to create patient", context={"facility_id": facility_id, "error": error})
            return CaseImportResult(success=False, error=f"Patient creation failed: {error}")

        self.log.info("Created new patient from FHIR", context={"facility_id": facility_id, "patient_id": created['id']})
        return CaseImportResult(success=True, patient_id=created['id'])

    async def create_case_from_import(
        self,
        facility_id: str,
        connection_id: str,
        preview: CaseImportPreview,
        imported_by: str,
        scheduled_status_id: str
    ) -> CaseImportResult:
        """Create the patient (if needed) and the case for one previewed appointment.

        Success is decided by case creation alone: the import log entry written
        afterwards is best effort and a failure there is only logged.
        Never raises.
        """
        context = {"facility_id": facility_id, "fhir_appointment_id": preview.fhir_appointment_id}
        try:
            field_mappings, _ = await self.dal.list_field_mappings(active_only=True)

            patient_result = await self._resolve_patient(facility_id, preview)
            if not patient_result.success:
                return patient_result
            patient_id = patient_result.patient_id

            case_number = case_number_for(preview.fhir_appointment_id)
            case_id, case_error = await self.local_db.create_case_with_milestones({
                'p_case_number': case_number,
                'p_scheduled_date': preview.scheduled_date,
                'p_start_time': preview.start_time,
                'p_or_room_id': preview.room_id,
                'p_procedure_type_id': preview.procedure_type_id,
                'p_status_id': scheduled_status_id,
                'p_surgeon_id': preview.surgeon_id,
                'p_facility_id': facility_id,
                'p_created_by': imported_by,
                'p_operative_side': None,
                'p_payer_id': None,
                'p_notes': None,
                'p_rep_required_override': None,
                'p_staff_assignments': None,
                'p_patient_id': patient_id,
                'p_source': EPIC_SOURCE,
            })
            if case_error:
                self.log.error("Failed to create case from import", context={**context, "error": case_error})
                return CaseImportResult(success=False, patient_id=patient_id, error=f"Case creation failed: {case_error}")

            _, log_error = await self.dal.create_import_log_entry({
                'facility_id': facility_id,
                'connection_id': connection_id,
                'fhir_appointment_id': preview.fhir_appointment_id,
                'orbit_case_id': case_id,
                'status': ImportLogStatus.SUCCESS,
                'fhir_resource_snapshot': preview.resolved.snapshot(),
                'field_mapping_applied': applied_field_mappings(field_mappings),
                'imported_by': imported_by,
            })
            if log_error:
                self.log.error("Import log write failed after case creation", context={**context, "case_id": case_id, "error": log_error})

            self.log.info("Case imported from Epic", context={**context, "case_id": case_id, "case_number": case_number})
            return CaseImportResult(success=True, case_id=case_id, patient_id=patient_id)
        except Exception as e:
            self.log.error("Case import threw", context={**context, "error": str(e)})
            return CaseImportResult(success=False, error=str(e) or "Unknown error")
