from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FACILITY_ID, make_connection
from database import DALResult
from epic.auto_matcher import AutoMatcher, find_best_match
from epic.models import LocalEntity, MappingType, MatchAction

SURGEONS = [
    {"id": "surgeon-smith", "first_name": "John", "last_name": "Smith"},
    {"id": "surgeon-garcia", "first_name": "Maria", "last_name": "Garcia"},
]

async def seed(dal, connection, mapping_type, names, resource_type="Practitioner"):
    resources = [{"id": f"epic-{n}", "display_name": name} for n, name in enumerate(names)]
    await dal.seed_entity_mappings(FACILITY_ID, connection['id'], mapping_type, resource_type, resources)

async def mappings_by_name(dal, connection, mapping_type=MappingType.SURGEON):
    mappings, _ = await dal.list_entity_mappings(connection['id'], mapping_type)
    return {m['epic_display_name']: m for m in mappings}

class TestFindBestMatch:
    """Best candidate selection"""

    def test_highest_score_wins(self):
        candidates = [LocalEntity("a", "OR 12"), LocalEntity("b", "OR 1")]
        entity, score = find_best_match("OR 1", candidates)
        assert entity.id == "b"
        assert score == 1.0

    def test_ties_keep_first_candidate(self):
        candidates = [LocalEntity("a", "Room A"), LocalEntity("b", "Room B")]
        entity, _ = find_best_match("Room C", candidates)
        assert entity.id == "a"

    def test_below_suggest_threshold(self):
        assert find_best_match("Garcia, Maria", [LocalEntity("a", "Smith, John")]) is None
        assert find_best_match("Smith, John", []) is None

class TestAutoMatch:
    """Auto-match against the stored entity mappings"""

    @pytest.mark.asyncio
    async def test_exact_match_is_applied(self, dal):
        connection = await make_connection(dal)
        await seed(dal, connection, MappingType.SURGEON, ["Smith, John"])

        summary = await AutoMatcher(dal).auto_match_surgeons(connection['id'], FACILITY_ID, SURGEONS)

        assert (summary.auto_applied, summary.suggested, summary.skipped) == (1, 0, 0)
        result = summary.results[0]
        assert result.action == MatchAction.AUTO_APPLIED
        assert result.orbit_entity_id == "surgeon-smith"
        assert result.orbit_entity_name == "Smith, John"
        assert result.confidence == 1.0

        stored = (await mappings_by_name(dal, connection))["Smith, John"]
        assert stored['orbit_entity_id'] == "surgeon-smith"
        assert stored['match_method'] == "auto"
        assert stored['match_confidence'] == 1.0

    @pytest.mark.asyncio
    async def test_near_match_is_applied_with_rounded_confidence(self, dal):
        connection = await make_connection(dal)
        # 1 edit over 11 characters
        await seed(dal, connection, MappingType.SURGEON, ["Smith, Jon"])

        summary = await AutoMatcher(dal).auto_match_surgeons(connection['id'], FACILITY_ID, SURGEONS)

        assert summary.auto_applied == 1
        assert summary.results[0].confidence == 0.91

    @pytest.mark.asyncio
    async def test_mid_confidence_is_only_suggested(self, dal):
        connection = await make_connection(dal)
        await seed(dal, connection, MappingType.SURGEON, ["Smyth, Jonny"])

        summary = await AutoMatcher(dal).auto_match_surgeons(connection['id'], FACILITY_ID, SURGEONS)

        assert (summary.auto_applied, summary.suggested, summary.skipped) == (0, 1, 0)
        result = summary.results[0]
        assert result.action == MatchAction.SUGGESTED
        assert result.orbit_entity_id == "surgeon-smith"
        assert 0.70 <= result.confidence < 0.90

        stored = (await mappings_by_name(dal, connection))["Smyth, Jonny"]
        assert stored['orbit_entity_id'] is None

    @pytest.mark.asyncio
    async def test_low_confidence_is_skipped(self, dal):
        connection = await make_connection(dal)
        await seed(dal, connection, MappingType.SURGEON, ["Nguyen, Thanh"])

        summary = await AutoMatcher(dal).auto_match_surgeons(connection['id'], FACILITY_ID, SURGEONS)

        assert (summary.auto_applied, summary.suggested, summary.skipped) == (0, 0, 1)
        result = summary.results[0]
        assert result.action == MatchAction.SKIPPED
        assert result.orbit_entity_id == ""
        assert result.confidence == 0.0

    @pytest.mark.asyncio
    async def test_local_entity_is_claimed_once(self, dal):
        connection = await make_connection(dal)
        await seed(dal, connection, MappingType.SURGEON, ["Smith, John", "SMITH, JOHN "])

        summary = await AutoMatcher(dal).auto_match_surgeons(
            connection['id'], FACILITY_ID, [{"id": "surgeon-smith", "first_name": "John", "last_name": "Smith"}]
        )

        assert summary.auto_applied == 1
        assert summary.skipped == 1
        mapped = [m for m in (await mappings_by_name(dal, connection)).values() if m['orbit_entity_id']]
        assert len(mapped) == 1

    @pytest.mark.asyncio
    async def test_existing_mappings_are_left_alone(self, dal):
        connection = await make_connection(dal)
        await seed(dal, connection, MappingType.SURGEON, ["Smith, John", "Smith, Johnny"])
        existing = (await mappings_by_name(dal, connection))["Smith, John"]
        await dal.upsert_entity_mapping({
            'facility_id': FACILITY_ID,
            'connection_id': connection['id'],
            'mapping_type': MappingType.SURGEON,
            'epic_resource_type': "Practitioner",
            'epic_resource_id': existing['epic_resource_id'],
            'orbit_entity_id': "surgeon-smith",
        })

        summary = await AutoMatcher(dal).auto_match_surgeons(connection['id'], FACILITY_ID, SURGEONS)

        # Only the unmapped row is considered, and surgeon-smith is already taken
        assert [r.epic_display_name for r in summary.results] == ["Smith, Johnny"]
        assert summary.auto_applied == 0
        assert summary.results[0].orbit_entity_id != "surgeon-smith"

    @pytest.mark.asyncio
    async def test_blank_display_name_is_skipped(self, dal):
        connection = await make_connection(dal)
        await dal.seed_entity_mappings(
            FACILITY_ID, connection['id'], MappingType.SURGEON, "Practitioner", [{"id": "epic-x", "display_name": None}]
        )

        summary = await AutoMatcher(dal).auto_match_surgeons(connection['id'], FACILITY_ID, SURGEONS)

        assert summary.skipped == 1
        assert summary.results[0].epic_resource_id == "epic-x"

    @pytest.mark.asyncio
    async def test_whitespace_display_name_does_not_match_blank_room(self, dal):
        connection = await make_connection(dal)
        await seed(dal, connection, MappingType.ROOM, ["   "], resource_type="Location")

        summary = await AutoMatcher(dal).auto_match_rooms(connection['id'], FACILITY_ID, [{"id": "room-1", "name": ""}])

        assert (summary.auto_applied, summary.suggested, summary.skipped) == (0, 0, 1)
        stored, _ = await dal.list_entity_mappings(connection['id'], MappingType.ROOM)
        assert stored[0]['orbit_entity_id'] is None

    @pytest.mark.asyncio
    async def test_rooms_and_procedures_match_by_name(self, dal):
        connection = await make_connection(dal)
        await seed(dal, connection, MappingType.ROOM, ["OR 1"], resource_type="Location")
        await seed(dal, connection, MappingType.PROCEDURE, ["Total Knee Replacement"], resource_type="ServiceType")
        matcher = AutoMatcher(dal)

        rooms = await matcher.auto_match_rooms(connection['id'], FACILITY_ID, [{"id": "room-1", "name": "OR 1"}])
        procedures = await matcher.auto_match_procedures(
            connection['id'], FACILITY_ID, [{"id": "proc-1", "name": "Total Knee Replacement"}]
        )

        assert rooms.auto_applied == 1
        assert rooms.mapping_type == MappingType.ROOM
        assert procedures.auto_applied == 1
        assert procedures.to_dict()["mappingType"] == "procedure"

    @pytest.mark.asyncio
    async def test_lookup_failure_reports_error(self):
        dal = MagicMock()
        dal.list_entity_mappings = AsyncMock(return_value=DALResult([], "Database operation failed: disk I/O error"))
        dal.upsert_entity_mapping = AsyncMock()

        summary = await AutoMatcher(dal).auto_match_surgeons("conn-1", FACILITY_ID, SURGEONS)

        assert (summary.auto_applied, summary.suggested, summary.skipped) == (0, 0, 0)
        assert summary.results == []
        assert summary.error == "Database operation failed: disk I/O error"
        dal.upsert_entity_mapping.assert_not_awaited()
