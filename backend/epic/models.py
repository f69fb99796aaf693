"""
Epic integration types

FHIR resources stay plain JSON dicts; these are the integration's own
result and record shapes. ``to_dict()`` produces the camelCase payload the
admin screens consume.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

FhirResource = Dict[str, Any]

class MappingType(str, Enum):
    SURGEON = "surgeon"
    ROOM = "room"
    PROCEDURE = "procedure"

class MatchMethod(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"

class MatchAction(str, Enum):
    AUTO_APPLIED = "auto_applied"
    SUGGESTED = "suggested"
    SKIPPED = "skipped"

class PreviewStatus(str, Enum):
    READY = "ready"
    MISSING_MAPPINGS = "missing_mappings"
    ALREADY_IMPORTED = "already_imported"

class ImportLogStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"

class FhirResult(NamedTuple):
    """``(data, error)`` pair returned by every FHIR call"""
    data: Any
    error: Optional[str]

@dataclass
class OperationResult:
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "error": self.error}

class TokenResult(NamedTuple):
    token: Optional[str]
    error: Optional[str] = None

@dataclass
class EpicTokenResponse:
    """OAuth token response deposited by the external callback flow"""
    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    scope: Optional[str] = None
    refresh_token: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'EpicTokenResponse':
        return cls(
            access_token=payload['access_token'],
            expires_in=int(payload.get('expires_in') or 0),
            token_type=payload.get('token_type') or "Bearer",
            scope=payload.get('scope'),
            refresh_token=payload.get('refresh_token'),
        )

@dataclass
class TokenExpiryInfo:
    expires_at: Optional[datetime]
    is_expired: bool
    minutes_remaining: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "isExpired": self.is_expired,
            "minutesRemaining": self.minutes_remaining,
        }

@dataclass
class LocalEntity:
    """A surgeon, room or procedure type reduced to the name it is matched by"""
    id: str
    name: str

@dataclass
class AutoMatchResult:
    epic_resource_id: str
    epic_display_name: str
    orbit_entity_id: str
    orbit_entity_name: str
    confidence: float
    action: MatchAction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "epicResourceId": self.epic_resource_id,
            "epicDisplayName": self.epic_display_name,
            "orbitEntityId": self.orbit_entity_id,
            "orbitEntityName": self.orbit_entity_name,
            "confidence": self.confidence,
            "action": self.action.value,
        }

@dataclass
class AutoMatchSummary:
    mapping_type: MappingType
    auto_applied: int = 0
    suggested: int = 0
    skipped: int = 0
    results: List[AutoMatchResult] = field(default_factory=list)
    # Set when the existing mappings could not be read
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mappingType": self.mapping_type.value,
            "autoApplied": self.auto_applied,
            "suggested": self.suggested,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results],
            "error": self.error,
        }

@dataclass
class ResolvedAppointment:
    appointment: FhirResource
    patient: Optional[FhirResource] = None
    practitioner: Optional[FhirResource] = None
    location: Optional[FhirResource] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "appointment": self.appointment,
            "patient": self.patient,
            "practitioner": self.practitioner,
            "location": self.location,
        }

@dataclass
class CaseImportPreview:
    fhir_appointment_id: str
    scheduled_date: Optional[str]
    start_time: Optional[str]
    patient_name: Optional[str]
    patient_mrn: Optional[str]
    patient_dob: Optional[str]
    surgeon_name: Optional[str]
    surgeon_id: Optional[str]
    room_name: Optional[str]
    room_id: Optional[str]
    procedure_name: Optional[str]
    procedure_type_id: Optional[str]
    epic_practitioner_id: Optional[str]
    epic_location_id: Optional[str]
    epic_service_type: Optional[str]
    status: PreviewStatus
    missing_mappings: List[str]
    resolved: ResolvedAppointment

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fhirAppointmentId": self.fhir_appointment_id,
            "scheduledDate": self.scheduled_date,
            "startTime": self.start_time,
            "patientName": self.patient_name,
            "patientMrn": self.patient_mrn,
            "patientDob": self.patient_dob,
            "surgeonName": self.surgeon_name,
            "surgeonId": self.surgeon_id,
            "roomName": self.room_name,
            "roomId": self.room_id,
            "procedureName": self.procedure_name,
            "procedureTypeId": self.procedure_type_id,
            "epicPractitionerId": self.epic_practitioner_id,
            "epicLocationId": self.epic_location_id,
            "epicServiceType": self.epic_service_type,
            "status": self.status.value,
            "missingMappings": list(self.missing_mappings),
        }

@dataclass
class CaseImportResult:
    success: bool
    case_id: Optional[str] = None
    patient_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "caseId": self.case_id,
            "patientId": self.patient_id,
            "error": self.error,
        }

@dataclass
class ImportResultItem:
    fhir_appointment_id: str
    success: bool
    case_id: Optional[str] = None
    case_number: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fhirAppointmentId": self.fhir_appointment_id,
            "success": self.success,
            "caseId": self.case_id,
            "caseNumber": self.case_number,
            "error": self.error,
        }

@dataclass
class ImportBatchResult:
    results: List[ImportResultItem] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": {
                "total": len(self.results),
                "success": self.success_count,
                "failed": self.failed_count,
            },
            "error": self.error,
        }

def case_number_for(fhir_appointment_id: str) -> str:
    return f"EPIC-{fhir_appointment_id}"
