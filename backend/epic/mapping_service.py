"""
Manual entity and field mapping administration

Admin edits to entity mappings and the global field mapping table, each
followed by its audit event.
"""

from typing import Any, Dict, List, Optional

from database import DALResult
from logging_config import ComponentLogger, get_component_logger

from .audit import EpicAuditAction, EpicAuditLogger
from .dal import EpicDAL
from .mapping_types import spec_for
from .models import MappingType, MatchMethod, OperationResult

class MappingService:
    def __init__(self, dal: EpicDAL, audit: EpicAuditLogger, logger: Optional[ComponentLogger] = None):
        self.dal = dal
        self.audit = audit
        self.log = logger or get_component_logger("mappings")

    async def list_mappings(self, connection_id: str, mapping_type: Optional[MappingType] = None) -> DALResult:
        return await self.dal.list_entity_mappings(connection_id, mapping_type)

    async def get_stats(self, connection_id: str) -> DALResult:
        return await self.dal.get_mapping_stats(connection_id)

    async def save_manual_mapping(
        self,
        facility_id: str,
        connection_id: str,
        mapping_type: MappingType,
        epic_resource_id: str,
        orbit_entity_id: Optional[str],
        user_id: Optional[str],
        epic_display_name: Optional[str] = None,
        epic_resource_type: Optional[str] = None
    ) -> DALResult:
        """Assign (or with ``orbit_entity_id=None`` unassign) an Epic resource by hand"""
        spec = spec_for(mapping_type)
        existing, error = await self._find(connection_id, spec.mapping_type, epic_resource_id)
        if error:
            return DALResult(None, error)

        record = {
            'facility_id': facility_id,
            'connection_id': connection_id,
            'mapping_type': spec.mapping_type,
            'epic_resource_type': epic_resource_type or (existing or {}).get('epic_resource_type') or spec.epic_resource_type,
            'epic_resource_id': epic_resource_id,
            'orbit_entity_id': orbit_entity_id,
            'match_method': MatchMethod.MANUAL,
            'match_confidence': None,
        }
        if epic_display_name is not None:
            record['epic_display_name'] = epic_display_name

        mapping, error = await self.dal.upsert_entity_mapping(record)
        if error:
            self.log.error(
                "Failed to save mapping",
                context={"connection_id": connection_id, "epic_resource_id": epic_resource_id, "error": error}
            )
            return DALResult(None, error)

        action = EpicAuditAction.MAPPING_UPDATED if existing else EpicAuditAction.MAPPING_CREATED
        await self.audit.mapping_changed(
            action, facility_id, user_id,
            mapping_id=mapping['id'],
            mapping_type=spec.mapping_type.value,
            epic_display_name=mapping.get('epic_display_name'),
            orbit_entity_id=orbit_entity_id,
        )
        return DALResult(mapping, None)

    async def _find(self, connection_id: str, mapping_type: MappingType, epic_resource_id: str) -> DALResult:
        mappings, error = await self.dal.list_entity_mappings(connection_id, mapping_type)
        if error:
            return DALResult(None, error)
        return DALResult(next((m for m in mappings if m['epic_resource_id'] == epic_resource_id), None), None)

    async def delete_mapping(self, mapping_id: str, user_id: Optional[str]) -> OperationResult:
        mapping, error = await self.dal.get_entity_mapping(mapping_id)
        if error:
            return OperationResult(False, error)
        if not mapping:
            return OperationResult(False, "Mapping not found")

        _, error = await self.dal.delete_entity_mapping(mapping_id)
        if error:
            return OperationResult(False, error)

        await self.audit.mapping_changed(
            EpicAuditAction.MAPPING_DELETED, mapping['facility_id'], user_id,
            mapping_id=mapping_id,
            mapping_type=mapping['mapping_type'],
            epic_display_name=mapping.get('epic_display_name'),
            orbit_entity_id=mapping.get('orbit_entity_id'),
        )
        return OperationResult(True)

    # Field mappings

    async def list_field_mappings(self, active_only: bool = False) -> DALResult:
        return await self.dal.list_field_mappings(active_only)

    async def update_field_mappings(self, updates: List[Dict[str, Any]], user_id: Optional[str]) -> OperationResult:
        _, error = await self.dal.batch_update_field_mappings(updates)
        if error:
            return OperationResult(False, error)
        await self.audit.field_mapping_updated(user_id, [u['id'] for u in updates])
        return OperationResult(True)

    async def reset_field_mappings(self, user_id: Optional[str]) -> OperationResult:
        _, error = await self.dal.reset_field_mappings_to_defaults()
        if error:
            return OperationResult(False, error)
        await self.audit.field_mapping_reset(user_id)
        return OperationResult(True)
