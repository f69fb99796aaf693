"""
Epic import orchestration

Ties the FHIR client, case mapper and auto-matcher together for the admin
screens: appointment previews, batch case import, auto-match runs and
seeding of entity mapping rows from what Epic reports.

Fan-out is bounded: appointment resolution and case import each run under
an ``asyncio.Semaphore`` sized from configuration.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from config import get_config
from database import DALResult
from local_db import LocalDatabase
from logging_config import ComponentLogger, get_component_logger

from .audit import EpicAuditLogger
from .auto_matcher import AutoMatcher
from .case_mapper import CaseMapper
from .connection_state import ConnectionStatus
from .dal import EpicDAL
from .fhir_client import FhirClient
from .mapping_types import spec_for
from .models import (
    CaseImportPreview,
    FhirResult,
    ImportBatchResult,
    ImportLogStatus,
    ImportResultItem,
    MappingType,
    PreviewStatus,
    case_number_for,
)
from .token_manager import NO_CONNECTION_ERROR

NO_ACTIVE_CONNECTION_ERROR = "No active Epic connection"
NO_SCHEDULED_STATUS_ERROR = 'Could not find "scheduled" case status'
ALREADY_IMPORTED_ERROR = "Already imported"

@dataclass
class _ImportRun:
    """State shared by the appointments of one import request"""
    facility_id: str
    connection_id: str
    imported_by: str
    scheduled_status_id: str
    entity_mappings: List[Dict]
    imported_ids: Set[str]
    semaphore: asyncio.Semaphore
    id_locks: Dict[str, asyncio.Lock] = field(default_factory=dict)

    def lock_for(self, fhir_appointment_id: str) -> asyncio.Lock:
        lock = self.id_locks.get(fhir_appointment_id)
        if lock is None:
            lock = self.id_locks[fhir_appointment_id] = asyncio.Lock()
        return lock

class EpicImportService:
    def __init__(
        self,
        dal: EpicDAL,
        local_db: LocalDatabase,
        fhir_client: FhirClient,
        case_mapper: CaseMapper,
        auto_matcher: AutoMatcher,
        audit: EpicAuditLogger,
        logger: Optional[ComponentLogger] = None,
        import_concurrency: Optional[int] = None,
        resolve_concurrency: Optional[int] = None
    ):
        config = get_config().epic
        self.dal = dal
        self.local_db = local_db
        self.fhir_client = fhir_client
        self.case_mapper = case_mapper
        self.auto_matcher = auto_matcher
        self.audit = audit
        self.log = logger or get_component_logger("import")
        self.import_concurrency = import_concurrency or config.import_concurrency
        self.resolve_concurrency = resolve_concurrency or config.resolve_concurrency

    async def _get_connection(self, facility_id: str) -> DALResult:
        connection, error = await self.dal.get_connection(facility_id)
        if error:
            return DALResult(None, error)
        if not connection:
            return DALResult(None, NO_CONNECTION_ERROR)
        return DALResult(connection, None)

    # Previews

    async def preview_appointments(
        self,
        facility_id: str,
        date_from: str,
        date_to: str,
        practitioner_id: Optional[str] = None
    ) -> FhirResult:
        """Import previews for the surgical appointments in a date range"""
        connection, error = await self._get_connection(facility_id)
        if error:
            return FhirResult([], error)

        appointments, error = await self.fhir_client.search_surgical_appointments(
            facility_id, date_from, date_to, practitioner_id
        )
        if error:
            return FhirResult([], error)

        entity_mappings, _ = await self.dal.list_entity_mappings(connection['id'])
        imported_ids, _ = await self.dal.get_imported_appointment_ids(facility_id)

        semaphore = asyncio.Semaphore(self.resolve_concurrency)

        async def preview(appointment) -> Optional[CaseImportPreview]:
            try:
                async with semaphore:
                    resolved = await self.fhir_client.resolve_appointment_details(facility_id, appointment)
                return self.case_mapper.map_appointment_to_preview(resolved, entity_mappings, imported_ids)
            except Exception as e:
                # Malformed appointment content drops that row only
                self.log.warning(
                    "Skipping appointment preview",
                    context={"facility_id": facility_id, "fhir_appointment_id": appointment.get("id"), "error": str(e)}
                )
                return None

        previews = await asyncio.gather(*(preview(a) for a in appointments))
        return FhirResult([p for p in previews if p is not None], None)

    # Batch import

    async def import_appointments(
        self,
        facility_id: str,
        appointment_ids: Sequence[str],
        imported_by: str
    ) -> ImportBatchResult:
        """Import the selected appointments as cases.

        Every appointment gets an import log entry and a result item; one
        failing appointment never stops the others. Repeats of an id within
        the request wait for the first and are then reported as duplicates.
        """
        connection, _ = await self.dal.get_connection(facility_id)
        if not connection or connection['status'] != ConnectionStatus.CONNECTED.value:
            return ImportBatchResult(error=NO_ACTIVE_CONNECTION_ERROR)

        scheduled_status_id, _ = await self.local_db.get_case_status_id("scheduled")
        if not scheduled_status_id:
            return ImportBatchResult(error=NO_SCHEDULED_STATUS_ERROR)

        entity_mappings, _ = await self.dal.list_entity_mappings(connection['id'])
        imported_ids, _ = await self.dal.get_imported_appointment_ids(facility_id)

        run = _ImportRun(
            facility_id=facility_id,
            connection_id=connection['id'],
            imported_by=imported_by,
            scheduled_status_id=scheduled_status_id,
            entity_mappings=entity_mappings,
            imported_ids=set(imported_ids),
            semaphore=asyncio.Semaphore(self.import_concurrency),
        )

        items = await asyncio.gather(*(self._import_guarded(run, fhir_id) for fhir_id in appointment_ids))
        batch = ImportBatchResult(results=list(items))

        await self.audit.cases_imported(
            facility_id, imported_by, len(appointment_ids), batch.success_count, batch.failed_count
        )
        self.log.info(
            "Epic case import complete",
            context={
                "facility_id": facility_id,
                "total": len(appointment_ids),
                "success": batch.success_count,
                "failed": batch.failed_count,
            }
        )
        return batch

    async def _import_guarded(self, run: _ImportRun, fhir_appointment_id: str) -> ImportResultItem:
        # Same id waits on its own lock before taking a worker slot
        async with run.lock_for(fhir_appointment_id):
            async with run.semaphore:
                try:
                    return await self._import_one(run, fhir_appointment_id)
                except Exception as e:
                    message = str(e) or "Unknown error"
                    self.log.error(
                        "Appointment import threw",
                        context={"facility_id": run.facility_id, "fhir_appointment_id": fhir_appointment_id, "error": message}
                    )
                    return await self._fail(run, fhir_appointment_id, message)

    async def _import_one(self, run: _ImportRun, fhir_appointment_id: str) -> ImportResultItem:
        if fhir_appointment_id in run.imported_ids:
            await self._log_attempt(run, fhir_appointment_id, ImportLogStatus.DUPLICATE, ALREADY_IMPORTED_ERROR)
            return ImportResultItem(fhir_appointment_id, success=False, error=ALREADY_IMPORTED_ERROR)

        appointment, fetch_error = await self.fhir_client.get_appointment(run.facility_id, fhir_appointment_id)
        if fetch_error or not appointment:
            return await self._fail(run, fhir_appointment_id, fetch_error or "Failed to fetch appointment")

        resolved = await self.fhir_client.resolve_appointment_details(run.facility_id, appointment)
        preview = self.case_mapper.map_appointment_to_preview(resolved, run.entity_mappings, run.imported_ids)

        if preview.status == PreviewStatus.MISSING_MAPPINGS:
            message = f"Missing mappings: {', '.join(preview.missing_mappings)}"
            await self._log_attempt(run, fhir_appointment_id, ImportLogStatus.SKIPPED, message)
            return ImportResultItem(fhir_appointment_id, success=False, error=message)

        result = await self.case_mapper.create_case_from_import(
            run.facility_id, run.connection_id, preview, run.imported_by, run.scheduled_status_id
        )
        if not result.success:
            return await self._fail(run, fhir_appointment_id, result.error or "Unknown error")

        run.imported_ids.add(fhir_appointment_id)
        return ImportResultItem(
            fhir_appointment_id,
            success=True,
            case_id=result.case_id,
            case_number=case_number_for(fhir_appointment_id),
        )

    async def _fail(self, run: _ImportRun, fhir_appointment_id: str, message: str) -> ImportResultItem:
        await self._log_attempt(run, fhir_appointment_id, ImportLogStatus.FAILED, message)
        await self.audit.case_import_failed(run.facility_id, run.imported_by, fhir_appointment_id, message)
        return ImportResultItem(fhir_appointment_id, success=False, error=message)

    async def _log_attempt(self, run: _ImportRun, fhir_appointment_id: str, status: ImportLogStatus, message: str):
        _, error = await self.dal.create_import_log_entry({
            'facility_id': run.facility_id,
            'connection_id': run.connection_id,
            'fhir_appointment_id': fhir_appointment_id,
            'status': status,
            'error_message': message,
            'imported_by': run.imported_by,
        })
        if error:
            self.log.error(
                "Import log write failed",
                context={"fhir_appointment_id": fhir_appointment_id, "status": status.value, "error": error}
            )

    # Mapping maintenance

    async def _local_rows(self, facility_id: str, mapping_type: MappingType) -> DALResult:
        loaders = {
            MappingType.SURGEON: self.local_db.list_surgeons,
            MappingType.ROOM: self.local_db.list_rooms,
            MappingType.PROCEDURE: self.local_db.list_procedure_types,
        }
        return await loaders[mapping_type](facility_id)

    async def run_auto_match(
        self,
        facility_id: str,
        mapping_types: Optional[Sequence[MappingType]] = None,
        user_id: Optional[str] = None
    ) -> DALResult:
        """Auto-match the requested mapping types (all by default); ``data`` is a list of summaries"""
        connection, error = await self._get_connection(facility_id)
        if error:
            return DALResult([], error)

        summaries = []
        for mapping_type in mapping_types or list(MappingType):
            mapping_type = MappingType(mapping_type)
            rows, rows_error = await self._local_rows(facility_id, mapping_type)
            if rows_error:
                self.log.warning(
                    "Failed to load local entities for auto-match",
                    context={"facility_id": facility_id, "mapping_type": mapping_type.value, "error": rows_error}
                )
            summaries.append(await self.auto_matcher.auto_match(connection['id'], facility_id, mapping_type, rows))

        await self.audit.auto_match_run(facility_id, user_id, {
            s.mapping_type.value: {"auto_applied": s.auto_applied, "suggested": s.suggested, "skipped": s.skipped}
            for s in summaries
        })
        return DALResult(summaries, None)

    async def sync_entity_mappings(
        self,
        facility_id: str,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None
    ) -> DALResult:
        """Seed unmapped rows for the practitioners, locations and service types Epic reports.

        Service types come from the surgical appointments in the date range,
        so they are only seeded when both dates are given. ``data`` holds the
        number of new rows per mapping type; ``error`` is the first failure.
        """
        connection, error = await self._get_connection(facility_id)
        if error:
            return DALResult({}, error)

        sources = [
            (MappingType.SURGEON, lambda: self.fhir_client.search_practitioners(facility_id)),
            (MappingType.ROOM, lambda: self.fhir_client.search_locations(facility_id)),
        ]
        if date_from and date_to:
            sources.append(
                (MappingType.PROCEDURE, lambda: self.fhir_client.search_surgical_appointments(facility_id, date_from, date_to))
            )

        counts: Dict[str, int] = {}
        first_error = None
        for mapping_type, fetch in sources:
            resources, fetch_error = await fetch()
            if fetch_error:
                first_error = first_error or fetch_error
                counts[mapping_type.value] = 0
                continue

            spec = spec_for(mapping_type)
            seen = {}
            for resource in resources:
                resource_id = spec.epic_resource_id(resource)
                if resource_id and resource_id not in seen:
                    seen[resource_id] = {"id": resource_id, "display_name": spec.epic_display_name(resource)}

            inserted, seed_error = await self.dal.seed_entity_mappings(
                facility_id, connection['id'], mapping_type, spec.epic_resource_type, seen.values()
            )
            counts[mapping_type.value] = inserted or 0
            if seed_error:
                first_error = first_error or seed_error

        self.log.info("Entity mappings synced from Epic", context={"facility_id": facility_id, **counts})
        return DALResult(counts, first_error)
