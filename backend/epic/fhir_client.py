"""
Epic FHIR client

Resource fetching for surgical appointments and the patients, practitioners
and locations they reference. Built on ``TokenManager.epic_fhir_request``;
every call returns a ``FhirResult`` and never raises.
"""

import asyncio
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from config import get_config
from logging_config import ComponentLogger, get_component_logger

from .models import FhirResource, FhirResult, ResolvedAppointment
from .token_manager import TokenManager

SURGICAL_SERVICE_TYPE = "http://snomed.info/sct|387713003"
ACTIVE_APPOINTMENT_STATUSES = frozenset({"booked", "arrived", "pending", "proposed"})

def extract_resource_id(reference: str) -> Optional[str]:
    """``"Patient/abc123"`` -> ``"abc123"``"""
    parts = reference.split("/")
    return parts[-1] if len(parts) >= 2 else None

def find_participant(appointment: FhirResource, resource_type: str) -> Optional[Dict[str, Any]]:
    """First participant actor referencing ``resource_type``"""
    for participant in appointment.get("participant") or []:
        actor = participant.get("actor") or {}
        reference = actor.get("reference")
        if reference and reference.startswith(f"{resource_type}/"):
            return actor
    return None

def find_participant_ref(appointment: FhirResource, resource_type: str) -> Optional[str]:
    actor = find_participant(appointment, resource_type)
    return extract_resource_id(actor["reference"]) if actor else None

def extract_bundle_entries(bundle: Optional[FhirResource]) -> List[FhirResource]:
    if not bundle or not bundle.get("entry"):
        return []
    return [entry["resource"] for entry in bundle["entry"] if entry.get("resource")]

def is_valid_appointment(appointment: FhirResource) -> bool:
    return bool(appointment.get("id") and appointment.get("status") and appointment.get("participant"))

class FhirClient:
    def __init__(self, token_manager: TokenManager, logger: Optional[ComponentLogger] = None):
        self.token_manager = token_manager
        self.log = logger or get_component_logger("fhir-client")
        self.config = get_config().epic

    async def _request(self, facility_id: str, resource_path: str) -> FhirResult:
        return await self.token_manager.epic_fhir_request(facility_id, resource_path)

    async def search_surgical_appointments(
        self,
        facility_id: str,
        date_from: str,
        date_to: str,
        practitioner_id: Optional[str] = None
    ) -> FhirResult:
        """Surgical appointments between two ``YYYY-MM-DD`` dates that are still going ahead"""
        params = [
            ("date", f"ge{date_from}"),
            ("_count", str(self.config.appointment_page_size)),
            ("service-type", SURGICAL_SERVICE_TYPE),
            ("date", f"le{date_to}"),
        ]
        if practitioner_id:
            params.append(("practitioner", f"Practitioner/{practitioner_id}"))

        bundle, error = await self._request(facility_id, f"Appointment?{urlencode(params)}")
        if error:
            self.log.error("Failed to search appointments", context={"facility_id": facility_id, "error": error})
            return FhirResult([], error)

        appointments = extract_bundle_entries(bundle)

        valid = []
        for appointment in appointments:
            if not is_valid_appointment(appointment):
                self.log.warning(
                    "Skipping invalid FHIR appointment",
                    context={"facility_id": facility_id, "appointment_id": appointment.get("id")}
                )
                continue
            valid.append(appointment)

        active = [a for a in valid if a["status"] in ACTIVE_APPOINTMENT_STATUSES]

        self.log.info(
            "Fetched surgical appointments",
            context={
                "facility_id": facility_id,
                "total": len(appointments),
                "valid": len(valid),
                "active": len(active),
                "skipped_invalid": len(appointments) - len(valid),
                "date_range": f"{date_from} to {date_to}",
            }
        )
        return FhirResult(active, None)

    async def get_appointment(self, facility_id: str, appointment_id: str) -> FhirResult:
        return await self._request(facility_id, f"Appointment/{appointment_id}")

    async def get_patient(self, facility_id: str, patient_id: str) -> FhirResult:
        data, error = await self._request(facility_id, f"Patient/{patient_id}")
        if error:
            self.log.warning("Failed to fetch patient", context={"facility_id": facility_id, "patient_id": patient_id, "error": error})
        return FhirResult(data, error)

    async def get_practitioner(self, facility_id: str, practitioner_id: str) -> FhirResult:
        data, error = await self._request(facility_id, f"Practitioner/{practitioner_id}")
        if error:
            self.log.warning(
                "Failed to fetch practitioner",
                context={"facility_id": facility_id, "practitioner_id": practitioner_id, "error": error}
            )
        return FhirResult(data, error)

    async def get_location(self, facility_id: str, location_id: str) -> FhirResult:
        data, error = await self._request(facility_id, f"Location/{location_id}")
        if error:
            self.log.warning("Failed to fetch location", context={"facility_id": facility_id, "location_id": location_id, "error": error})
        return FhirResult(data, error)

    async def search_practitioners(self, facility_id: str, name: Optional[str] = None) -> FhirResult:
        params = {"_count": str(self.config.directory_page_size)}
        if name:
            params["name"] = name
        bundle, error = await self._request(facility_id, f"Practitioner?{urlencode(params)}")
        if error:
            return FhirResult([], error)
        return FhirResult(extract_bundle_entries(bundle), None)

    async def search_locations(self, facility_id: str) -> FhirResult:
        bundle, error = await self._request(facility_id, f"Location?_count={self.config.directory_page_size}")
        if error:
            return FhirResult([], error)
        return FhirResult(extract_bundle_entries(bundle), None)

    async def resolve_appointment_details(self, facility_id: str, appointment: FhirResource) -> ResolvedAppointment:
        """Fetch the patient, practitioner and location an appointment references.

        The three fetches run concurrently and fail independently; an
        unresolved or absent reference leaves that field ``None``. No request
        is made for a resource type the appointment does not reference.
        """
        refs = {
            "patient": (find_participant_ref(appointment, "Patient"), self.get_patient),
            "practitioner": (find_participant_ref(appointment, "Practitioner"), self.get_practitioner),
            "location": (find_participant_ref(appointment, "Location"), self.get_location),
        }
        wanted = {field: fetch(facility_id, ref) for field, (ref, fetch) in refs.items() if ref}

        outcomes = await asyncio.gather(*wanted.values(), return_exceptions=True)

        resolved = ResolvedAppointment(appointment=appointment)
        for field, outcome in zip(wanted, outcomes):
            if isinstance(outcome, BaseException):
                self.log.warning(
                    f"Failed to resolve {field} for appointment",
                    context={
                        "facility_id": facility_id,
                        "appointment_id": appointment.get("id"),
                        f"{field}_id": refs[field][0],
                        "error": str(outcome),
                    }
                )
                continue
            setattr(resolved, field, outcome.data)
        return resolved
