"""
Data access for the Epic tables

Connections, entity mappings, field mappings and the import log. Every
method returns a ``DALResult(data, error)``; database failures become the
``error`` string instead of propagating.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from database import DatabaseManager, DALResult, insert_default_field_mappings, new_id, utc_now_iso
from exceptions import DatabaseError

from .models import ImportLogStatus, MappingType

logger = logging.getLogger(__name__)

CONNECTION_UPDATABLE_COLUMNS = (
    'status', 'last_connected_at', 'last_error', 'access_token', 'refresh_token',
    'token_expires_at', 'token_scopes', 'connected_by', 'fhir_base_url', 'client_id',
    'client_secret', 'sync_mode',
)

# Columns of the status projection; token columns are never part of it
CONNECTION_STATUS_COLUMNS = (
    'id', 'facility_id', 'status', 'last_connected_at', 'connected_by',
    'token_expires_at', 'fhir_base_url', 'last_error', 'sync_mode',
)

ENTITY_MAPPING_COLUMNS = (
    'facility_id', 'connection_id', 'mapping_type', 'epic_resource_type',
    'epic_resource_id', 'epic_display_name', 'orbit_entity_id', 'match_method',
    'match_confidence',
)

FIELD_MAPPING_UPDATABLE_COLUMNS = ('orbit_table', 'orbit_column', 'label', 'description', 'is_active')

IMPORT_LOG_JSON_COLUMNS = ('fhir_resource_snapshot', 'field_mapping_applied')

def _decode_connection(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row and row.get('token_scopes'):
        row['token_scopes'] = json.loads(row['token_scopes'])
    return row

def _decode_field_mapping(row: Dict[str, Any]) -> Dict[str, Any]:
    row['is_default'] = bool(row['is_default'])
    row['is_active'] = bool(row['is_active'])
    return row

def _decode_import_log(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row:
        for column in IMPORT_LOG_JSON_COLUMNS:
            if row.get(column):
                row[column] = json.loads(row[column])
    return row

class EpicDAL:
    def __init__(self, db: DatabaseManager):
        self.db = db

    # Connections

    async def get_connection(self, facility_id: str) -> DALResult:
        try:
            row = self.db.execute_single("SELECT * FROM epic_connections WHERE facility_id = ?", (facility_id,))
            return DALResult(_decode_connection(row), None)
        except DatabaseError as e:
            return DALResult(None, e.message)

    async def get_connection_status(self, facility_id: str) -> DALResult:
        """Connection fields that are safe to show to any facility user"""
        try:
            row = self.db.execute_single(
                f"SELECT {', '.join(CONNECTION_STATUS_COLUMNS)} FROM epic_connections WHERE facility_id = ?",
                (facility_id,)
            )
            return DALResult(row, None)
        except DatabaseError as e:
            return DALResult(None, e.message)

    async def upsert_connection(
        self,
        facility_id: str,
        fhir_base_url: str,
        client_id: str,
        status: Optional[str] = None,
        connected_by: Optional[str] = None,
        sync_mode: Optional[str] = None,
        client_secret: Optional[str] = None
    ) -> DALResult:
        """Create or update the single connection of a facility.

        An existing connection keeps its status unless ``status`` is given.
        """
        now = utc_now_iso()
        status_update = "excluded.status" if status else "epic_connections.status"
        try:
            self.db.execute_update(
                f"""
                INSERT INTO epic_connections (
                    id, facility_id, fhir_base_url, client_id, client_secret, status,
                    connected_by, sync_mode, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (facility_id) DO UPDATE SET
                    fhir_base_url = excluded.fhir_base_url,
                    client_id = excluded.client_id,
                    client_secret = COALESCE(excluded.client_secret, epic_connections.client_secret),
                    status = {status_update},
                    connected_by = COALESCE(excluded.connected_by, epic_connections.connected_by),
                    sync_mode = excluded.sync_mode,
                    updated_at = excluded.updated_at
                """,
                (
                    new_id(), facility_id, fhir_base_url, client_id, client_secret,
                    status or 'disconnected', connected_by, sync_mode or 'manual', now, now,
                )
            )
        except DatabaseError as e:
            logger.error(f"Failed to upsert Epic connection for facility {facility_id}: {e.message}")
            return DALResult(None, e.message)
        return await self.get_connection(facility_id)

    async def update_connection(self, facility_id: str, updates: Dict[str, Any]) -> DALResult:
        """Update connection columns; ``data`` is the number of rows touched"""
        unknown = set(updates) - set(CONNECTION_UPDATABLE_COLUMNS)
        if unknown:
            return DALResult(None, f"Cannot update connection columns: {', '.join(sorted(unknown))}")
        if not updates:
            return DALResult(0, None)

        values = dict(updates)
        if 'token_scopes' in values and values['token_scopes'] is not None:
            values['token_scopes'] = json.dumps(values['token_scopes'])
        values['updated_at'] = utc_now_iso()

        assignments = ", ".join(f"{column} = ?" for column in values)
        try:
            count = self.db.execute_update(
                f"UPDATE epic_connections SET {assignments} WHERE facility_id = ?",
                tuple(values.values()) + (facility_id,)
            )
            return DALResult(count, None)
        except DatabaseError as e:
            logger.error(f"Failed to update Epic connection for facility {facility_id}: {e.message}")
            return DALResult(None, e.message)

    # Entity mappings

    async def list_entity_mappings(self, connection_id: str, mapping_type: Optional[MappingType] = None) -> DALResult:
        sql = "SELECT * FROM epic_entity_mappings WHERE connection_id = ?"
        params: tuple = (connection_id,)
        if mapping_type:
            sql += " AND mapping_type = ?"
            params += (MappingType(mapping_type).value,)
        sql += " ORDER BY epic_display_name"
        try:
            return DALResult(self.db.execute_query(sql, params), None)
        except DatabaseError as e:
            return DALResult([], e.message)

    async def get_entity_mapping(self, mapping_id: str) -> DALResult:
        try:
            return DALResult(self.db.execute_single("SELECT * FROM epic_entity_mappings WHERE id = ?", (mapping_id,)), None)
        except DatabaseError as e:
            return DALResult(None, e.message)

    async def upsert_entity_mapping(self, record: Dict[str, Any]) -> DALResult:
        """Insert or update a mapping keyed on (connection, mapping type, epic resource id).

        Only the keys present in ``record`` are written on update; pass
        ``orbit_entity_id=None`` explicitly to unassign a mapping.
        """
        unknown = set(record) - set(ENTITY_MAPPING_COLUMNS)
        if unknown:
            return DALResult(None, f"Unknown mapping fields: {', '.join(sorted(unknown))}")

        values = dict(record)
        values['mapping_type'] = MappingType(values['mapping_type']).value
        if values.get('match_method') is not None:
            values['match_method'] = getattr(values['match_method'], 'value', values['match_method'])
        now = utc_now_iso()

        columns = ['id'] + list(values) + ['created_at', 'updated_at']
        params = (new_id(),) + tuple(values.values()) + (now, now)
        key_columns = ('connection_id', 'mapping_type', 'epic_resource_id')
        updates = [c for c in values if c not in key_columns] + ['updated_at']
        sql = f"""
            INSERT INTO epic_entity_mappings ({', '.join(columns)})
            VALUES ({', '.join('?' for _ in columns)})
            ON CONFLICT (connection_id, mapping_type, epic_resource_id) DO UPDATE SET
                {', '.join(f'{c} = excluded.{c}' for c in updates)}
        """
        try:
            self.db.execute_update(sql, params)
            row = self.db.execute_single(
                """
                SELECT * FROM epic_entity_mappings
                WHERE connection_id = ? AND mapping_type = ? AND epic_resource_id = ?
                """,
                (values['connection_id'], values['mapping_type'], values['epic_resource_id'])
            )
            return DALResult(row, None)
        except DatabaseError as e:
            logger.error(f"Failed to upsert entity mapping {values.get('epic_resource_id')}: {e.message}")
            return DALResult(None, e.message)

    async def seed_entity_mappings(
        self,
        facility_id: str,
        connection_id: str,
        mapping_type: MappingType,
        epic_resource_type: str,
        resources: Iterable[Dict[str, str]]
    ) -> DALResult:
        """Record Epic resources seen on the server as unmapped rows.

        ``resources`` yields ``{"id": ..., "display_name": ...}``. Existing rows
        only get their display name refreshed; a local assignment is never
        cleared. ``data`` is the number of newly inserted rows.
        """
        mapping_type = MappingType(mapping_type)
        now = utc_now_iso()
        inserted = 0
        try:
            with self.db.transaction() as conn:
                for resource in resources:
                    cursor = conn.execute(
                        """
                        INSERT INTO epic_entity_mappings (
                            id, facility_id, connection_id, mapping_type, epic_resource_type,
                            epic_resource_id, epic_display_name, match_method, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, 'manual', ?, ?)
                        ON CONFLICT (connection_id, mapping_type, epic_resource_id) DO NOTHING
                        """,
                        (
                            new_id(), facility_id, connection_id, mapping_type.value, epic_resource_type,
                            resource['id'], resource.get('display_name'), now, now,
                        )
                    )
                    if cursor.rowcount:
                        inserted += 1
                    elif resource.get('display_name'):
                        conn.execute(
                            """
                            UPDATE epic_entity_mappings SET epic_display_name = ?, updated_at = ?
                            WHERE connection_id = ? AND mapping_type = ? AND epic_resource_id = ?
                            """,
                            (resource['display_name'], now, connection_id, mapping_type.value, resource['id'])
                        )
            return DALResult(inserted, None)
        except DatabaseError as e:
            logger.error(f"Failed to seed {mapping_type.value} mappings for connection {connection_id}: {e.message}")
            return DALResult(0, e.message)

    async def delete_entity_mapping(self, mapping_id: str) -> DALResult:
        try:
            return DALResult(self.db.execute_update("DELETE FROM epic_entity_mappings WHERE id = ?", (mapping_id,)), None)
        except DatabaseError as e:
            return DALResult(None, e.message)

    async def get_mapping_stats(self, connection_id: str) -> DALResult:
        """``{mapping_type: {"total", "mapped", "unmapped"}}`` for every mapping type"""
        stats = {t.value: {'total': 0, 'mapped': 0, 'unmapped': 0} for t in MappingType}
        try:
            rows = self.db.execute_query(
                "SELECT mapping_type, orbit_entity_id FROM epic_entity_mappings WHERE connection_id = ?",
                (connection_id,)
            )
        except DatabaseError as e:
            return DALResult(stats, e.message)

        for row in rows:
            entry = stats[row['mapping_type']]
            entry['total'] += 1
            entry['mapped' if row['orbit_entity_id'] else 'unmapped'] += 1
        return DALResult(stats, None)

    # Field mappings

    async def list_field_mappings(self, active_only: bool = False) -> DALResult:
        sql = "SELECT * FROM epic_field_mappings"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY fhir_resource_type, fhir_field_path"
        try:
            return DALResult([_decode_field_mapping(row) for row in self.db.execute_query(sql)], None)
        except DatabaseError as e:
            return DALResult([], e.message)

    async def batch_update_field_mappings(self, mappings: List[Dict[str, Any]]) -> DALResult:
        """Apply several field mapping edits in one transaction; ``data`` is the edit count"""
        for mapping in mappings:
            if not mapping.get('id'):
                return DALResult(None, "Every field mapping update needs an id")
            unknown = set(mapping) - set(FIELD_MAPPING_UPDATABLE_COLUMNS) - {'id'}
            if unknown:
                return DALResult(None, f"Cannot update field mapping columns: {', '.join(sorted(unknown))}")

        now = utc_now_iso()
        try:
            with self.db.transaction() as conn:
                for mapping in mappings:
                    updates = {k: v for k, v in mapping.items() if k != 'id'}
                    if 'is_active' in updates:
                        updates['is_active'] = 1 if updates['is_active'] else 0
                    updates['updated_at'] = now
                    conn.execute(
                        f"UPDATE epic_field_mappings SET {', '.join(f'{c} = ?' for c in updates)} WHERE id = ?",
                        tuple(updates.values()) + (mapping['id'],)
                    )
            return DALResult(len(mappings), None)
        except DatabaseError as e:
            logger.error(f"Field mapping batch update failed: {e.message}")
            return DALResult(None, e.message)

    async def reset_field_mappings_to_defaults(self) -> DALResult:
        try:
            with self.db.transaction() as conn:
                conn.execute("DELETE FROM epic_field_mappings")
                insert_default_field_mappings(conn)
            logger.info("Epic field mappings reset to defaults")
            return DALResult(True, None)
        except DatabaseError as e:
            logger.error(f"Field mapping reset failed: {e.message}")
            return DALResult(False, e.message)

    # Import log

    async def create_import_log_entry(self, entry: Dict[str, Any]) -> DALResult:
        """Append one import attempt; entries are never updated afterwards"""
        entry_id = new_id()
        try:
            status = ImportLogStatus(entry['status']).value
            self.db.execute_update(
                """
                INSERT INTO epic_import_log (
                    id, facility_id, connection_id, fhir_appointment_id, orbit_case_id, status,
                    error_message, fhir_resource_snapshot, field_mapping_applied, imported_by, imported_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    entry['facility_id'],
                    entry['connection_id'],
                    entry.get('fhir_appointment_id'),
                    entry.get('orbit_case_id'),
                    status,
                    entry.get('error_message'),
                    json.dumps(entry['fhir_resource_snapshot']) if entry.get('fhir_resource_snapshot') is not None else None,
                    json.dumps(entry['field_mapping_applied']) if entry.get('field_mapping_applied') is not None else None,
                    entry['imported_by'],
                    utc_now_iso(),
                )
            )
            return DALResult({'id': entry_id, 'status': status}, None)
        except (KeyError, ValueError) as e:
            return DALResult(None, f"Invalid import log entry: {e}")
        except DatabaseError as e:
            logger.error(f"Failed to write import log entry: {e.message}")
            return DALResult(None, e.message)

    async def list_import_log(self, facility_id: str, limit: Optional[int] = None, offset: Optional[int] = None) -> DALResult:
        sql = "SELECT * FROM epic_import_log WHERE facility_id = ? ORDER BY imported_at DESC"
        params: tuple = (facility_id,)
        if limit or offset:
            sql += " LIMIT ? OFFSET ?"
            params += (limit or 50, offset or 0)
        try:
            return DALResult([_decode_import_log(row) for row in self.db.execute_query(sql, params)], None)
        except DatabaseError as e:
            return DALResult([], e.message)

    async def check_duplicate_import(self, facility_id: str, fhir_appointment_id: str) -> DALResult:
        """The successful log entry for this appointment, if there is one"""
        try:
            row = self.db.execute_single(
                """
                SELECT * FROM epic_import_log
                WHERE facility_id = ? AND fhir_appointment_id = ? AND status = 'success'
                LIMIT 1
                """,
                (facility_id, fhir_appointment_id)
            )
            return DALResult(_decode_import_log(row), None)
        except DatabaseError as e:
            return DALResult(None, e.message)

    async def get_imported_appointment_ids(self, facility_id: str) -> DALResult:
        try:
            rows = self.db.execute_query(
                """
                SELECT DISTINCT fhir_appointment_id FROM epic_import_log
                WHERE facility_id = ? AND status = 'success' AND fhir_appointment_id IS NOT NULL
                """,
                (facility_id,)
            )
            return DALResult({row['fhir_appointment_id'] for row in rows}, None)
        except DatabaseError as e:
            return DALResult(set(), e.message)
