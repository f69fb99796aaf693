"""
Epic auto-matcher

Matches unmapped Epic practitioners, locations and service types to local
surgeons, rooms and procedure types by name similarity:

- confidence >= 0.90: applied immediately (``match_method='auto'``)
- 0.70 <= confidence < 0.90: returned as a suggestion, nothing written
- below 0.70: skipped
"""

from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from logging_config import ComponentLogger, get_component_logger

from .dal import EpicDAL
from .mapping_types import spec_for
from .models import AutoMatchResult, AutoMatchSummary, LocalEntity, MappingType, MatchAction, MatchMethod
from .similarity import similarity_score

AUTO_APPLY_THRESHOLD = 0.90
SUGGEST_THRESHOLD = 0.70

def find_best_match(epic_name: str, candidates: Iterable[LocalEntity]) -> Optional[Tuple[LocalEntity, float]]:
    """Highest scoring candidate, or ``None`` when nothing reaches the suggest threshold"""
    best: Optional[LocalEntity] = None
    best_score = 0.0
    for candidate in candidates:
        score = similarity_score(epic_name, candidate.name)
        if score > best_score:
            best, best_score = candidate, score

    if best is None or best_score < SUGGEST_THRESHOLD:
        return None
    return best, best_score

def _skipped(mapping: Dict[str, Any], epic_name: str) -> AutoMatchResult:
    return AutoMatchResult(
        epic_resource_id=mapping['epic_resource_id'],
        epic_display_name=epic_name,
        orbit_entity_id="",
        orbit_entity_name="",
        confidence=0.0,
        action=MatchAction.SKIPPED,
    )

class AutoMatcher:
    def __init__(self, dal: EpicDAL, logger: Optional[ComponentLogger] = None):
        self.dal = dal
        self.log = logger or get_component_logger("auto-matcher")

    async def auto_match(
        self,
        connection_id: str,
        facility_id: str,
        mapping_type: MappingType,
        local_rows: List[Dict[str, Any]]
    ) -> AutoMatchSummary:
        """Match the unmapped rows of one mapping type against ``local_rows``.

        ``local_rows`` are surgeon / room / procedure type records; they are
        named for comparison by the mapping type's rules.
        """
        spec = spec_for(mapping_type)
        summary = AutoMatchSummary(mapping_type=spec.mapping_type)
        candidates = [spec.to_local_entity(row) for row in local_rows]
        context = {"connection_id": connection_id, "mapping_type": spec.mapping_type.value}

        mappings, error = await self.dal.list_entity_mappings(connection_id, spec.mapping_type)
        if error:
            self.log.error("Failed to list entity mappings for auto-match", context={**context, "error": error})
            summary.error = error
            return summary

        unmapped = [m for m in mappings if not m.get('orbit_entity_id')]
        # Local entities already targeted by a mapping; grows as matches are applied
        claimed: Set[str] = {m['orbit_entity_id'] for m in mappings if m.get('orbit_entity_id')}

        for mapping in unmapped:
            epic_name = mapping.get('epic_display_name') or ""
            if not epic_name.strip():
                summary.skipped += 1
                summary.results.append(_skipped(mapping, epic_name))
                continue

            match = find_best_match(epic_name, (c for c in candidates if c.id not in claimed))
            if match is None:
                summary.skipped += 1
                summary.results.append(_skipped(mapping, epic_name))
                continue

            entity, score = match
            confidence = round(score, 2)
            if score >= AUTO_APPLY_THRESHOLD:
                action = MatchAction.AUTO_APPLIED
                _, upsert_error = await self.dal.upsert_entity_mapping({
                    'facility_id': facility_id,
                    'connection_id': connection_id,
                    'mapping_type': spec.mapping_type,
                    'epic_resource_type': mapping['epic_resource_type'],
                    'epic_resource_id': mapping['epic_resource_id'],
                    'epic_display_name': epic_name,
                    'orbit_entity_id': entity.id,
                    'match_method': MatchMethod.AUTO,
                    'match_confidence': confidence,
                })
                if upsert_error:
                    self.log.warning(
                        "Failed to apply auto-match",
                        context={**context, "epic_resource_id": mapping['epic_resource_id'], "error": upsert_error}
                    )
                claimed.add(entity.id)
                summary.auto_applied += 1
            else:
                action = MatchAction.SUGGESTED
                summary.suggested += 1

            summary.results.append(AutoMatchResult(
                epic_resource_id=mapping['epic_resource_id'],
                epic_display_name=epic_name,
                orbit_entity_id=entity.id,
                orbit_entity_name=entity.name,
                confidence=confidence,
                action=action,
            ))

        self.log.info(
            "Auto-match completed",
            context={
                **context,
                "auto_applied": summary.auto_applied,
                "suggested": summary.suggested,
                "skipped": summary.skipped,
            }
        )
        return summary

    async def auto_match_surgeons(self, connection_id: str, facility_id: str, surgeons: List[Dict[str, Any]]) -> AutoMatchSummary:
        """Surgeons are compared as ``"Last, First"``"""
        return await self.auto_match(connection_id, facility_id, MappingType.SURGEON, surgeons)

    async def auto_match_rooms(self, connection_id: str, facility_id: str, rooms: List[Dict[str, Any]]) -> AutoMatchSummary:
        return await self.auto_match(connection_id, facility_id, MappingType.ROOM, rooms)

    async def auto_match_procedures(self, connection_id: str, facility_id: str, procedures: List[Dict[str, Any]]) -> AutoMatchSummary:
        return await self.auto_match(connection_id, facility_id, MappingType.PROCEDURE, procedures)
