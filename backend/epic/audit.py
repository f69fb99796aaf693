"""
Epic audit trail

Writes Epic integration events to ``audit_log``. Audit writes are best
effort: a failure is logged and reported as ``False``, never raised.
"""

import json
from enum import Enum
from typing import Any, Dict, Optional

from database import DatabaseManager, new_id, utc_now_iso
from exceptions import DatabaseError
from logging_config import ComponentLogger, get_component_logger

class EpicAuditAction(str, Enum):
    CONNECTED = "epic.connected"
    DISCONNECTED = "epic.disconnected"
    TOKEN_EXPIRED = "epic.token_expired"
    CASES_IMPORTED = "epic.cases_imported"
    CASE_IMPORT_FAILED = "epic.case_import_failed"
    MAPPING_CREATED = "epic.mapping_created"
    MAPPING_UPDATED = "epic.mapping_updated"
    MAPPING_DELETED = "epic.mapping_deleted"
    AUTO_MATCH_RUN = "epic.auto_match_run"
    FIELD_MAPPING_UPDATED = "epic.field_mapping_updated"
    FIELD_MAPPING_RESET = "epic.field_mapping_reset"

AUDIT_ACTION_LABELS: Dict[EpicAuditAction, str] = {
    EpicAuditAction.CONNECTED: "Epic Connected",
    EpicAuditAction.DISCONNECTED: "Epic Disconnected",
    EpicAuditAction.TOKEN_EXPIRED: "Epic Token Expired",
    EpicAuditAction.CASES_IMPORTED: "Epic Cases Imported",
    EpicAuditAction.CASE_IMPORT_FAILED: "Epic Case Import Failed",
    EpicAuditAction.MAPPING_CREATED: "Epic Mapping Created",
    EpicAuditAction.MAPPING_UPDATED: "Epic Mapping Updated",
    EpicAuditAction.MAPPING_DELETED: "Epic Mapping Deleted",
    EpicAuditAction.AUTO_MATCH_RUN: "Epic Auto Match Run",
    EpicAuditAction.FIELD_MAPPING_UPDATED: "Epic Field Mapping Updated",
    EpicAuditAction.FIELD_MAPPING_RESET: "Epic Field Mappings Reset",
}

def audit_action_label(action: str) -> str:
    """Display label for an audit action, e.g. ``epic.cases_imported`` -> ``Epic Cases Imported``"""
    try:
        return AUDIT_ACTION_LABELS[EpicAuditAction(action)]
    except ValueError:
        pass
    words = action.replace(".", " ").replace("_", " ").split()
    return " ".join(word.capitalize() for word in words)

class EpicAuditLogger:
    def __init__(self, db: DatabaseManager, logger: Optional[ComponentLogger] = None):
        self.db = db
        self.log = logger or get_component_logger("audit")

    async def record(
        self,
        action: EpicAuditAction,
        facility_id: Optional[str],
        user_id: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        target_label: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None
    ) -> bool:
        action = EpicAuditAction(action)
        try:
            self.db.execute_update(
                """
                INSERT INTO audit_log (
                    id, facility_id, user_id, action, target_type, target_id,
                    target_label, metadata, success, error_message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id(),
                    facility_id,
                    user_id,
                    action.value,
                    target_type,
                    target_id,
                    target_label,
                    json.dumps(metadata or {}, default=str),
                    1 if success else 0,
                    error_message,
                    utc_now_iso(),
                )
            )
            return True
        except DatabaseError as e:
            self.log.error(
                "Audit write failed",
                context={"action": action.value, "facility_id": facility_id, "error": e.message}
            )
            return False

    # Named events

    async def connected(self, facility_id: str, user_id: Optional[str], fhir_base_url: Optional[str] = None) -> bool:
        return await self.record(
            EpicAuditAction.CONNECTED, facility_id, user_id,
            target_type="epic_connection", target_label=fhir_base_url,
            metadata={"fhir_base_url": fhir_base_url}
        )

    async def disconnected(self, facility_id: str, user_id: Optional[str]) -> bool:
        return await self.record(EpicAuditAction.DISCONNECTED, facility_id, user_id, target_type="epic_connection")

    async def token_expired(self, facility_id: str, reason: str) -> bool:
        return await self.record(
            EpicAuditAction.TOKEN_EXPIRED, facility_id,
            target_type="epic_connection", metadata={"reason": reason}
        )

    async def cases_imported(
        self, facility_id: str, user_id: Optional[str], total: int, success: int, failed: int
    ) -> bool:
        return await self.record(
            EpicAuditAction.CASES_IMPORTED, facility_id, user_id,
            target_type="case", target_label=f"{success} of {total} cases",
            metadata={"total": total, "success": success, "failed": failed}
        )

    async def case_import_failed(
        self, facility_id: str, user_id: Optional[str], fhir_appointment_id: str, error: str
    ) -> bool:
        return await self.record(
            EpicAuditAction.CASE_IMPORT_FAILED, facility_id, user_id,
            target_type="fhir_appointment", target_id=fhir_appointment_id,
            metadata={"fhir_appointment_id": fhir_appointment_id},
            success=False, error_message=error
        )

    async def mapping_changed(
        self,
        action: EpicAuditAction,
        facility_id: str,
        user_id: Optional[str],
        mapping_id: Optional[str],
        mapping_type: Optional[str],
        epic_display_name: Optional[str],
        orbit_entity_id: Optional[str] = None
    ) -> bool:
        return await self.record(
            action, facility_id, user_id,
            target_type="epic_entity_mapping", target_id=mapping_id, target_label=epic_display_name,
            metadata={"mapping_type": mapping_type, "orbit_entity_id": orbit_entity_id}
        )

    async def auto_match_run(self, facility_id: str, user_id: Optional[str], counts: Dict[str, Any]) -> bool:
        return await self.record(
            EpicAuditAction.AUTO_MATCH_RUN, facility_id, user_id,
            target_type="epic_entity_mapping", metadata=counts
        )

    async def field_mapping_updated(self, user_id: Optional[str], mapping_ids: list) -> bool:
        return await self.record(
            EpicAuditAction.FIELD_MAPPING_UPDATED, None, user_id,
            target_type="epic_field_mapping", metadata={"mapping_ids": mapping_ids, "count": len(mapping_ids)}
        )

    async def field_mapping_reset(self, user_id: Optional[str]) -> bool:
        return await self.record(EpicAuditAction.FIELD_MAPPING_RESET, None, user_id, target_type="epic_field_mapping")
