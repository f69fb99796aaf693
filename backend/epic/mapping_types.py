"""
Per mapping type rules

Everything that differs between surgeon, room and procedure mappings lives
in ``MAPPING_TYPE_SPECS``: the Epic resource type, how a local entity is
named for matching, and how an Epic resource is named and identified when
mapping rows are seeded.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .fhir_fields import extract_name, extract_service_type, format_name
from .models import FhirResource, LocalEntity, MappingType

@dataclass(frozen=True)
class MappingTypeSpec:
    mapping_type: MappingType
    epic_resource_type: str
    local_name: Callable[[Dict[str, Any]], str]
    epic_display_name: Callable[[FhirResource], Optional[str]]
    epic_resource_id: Callable[[FhirResource], Optional[str]]

    def to_local_entity(self, row: Dict[str, Any]) -> LocalEntity:
        return LocalEntity(id=row["id"], name=self.local_name(row))

def _surgeon_name(row: Dict[str, Any]) -> str:
    return f"{row.get('last_name') or ''}, {row.get('first_name') or ''}"

def _named_row(row: Dict[str, Any]) -> str:
    return row.get("name") or ""

def _practitioner_display(resource: FhirResource) -> Optional[str]:
    return format_name(extract_name(resource.get("name")))

def _location_display(resource: FhirResource) -> Optional[str]:
    return resource.get("name")

def _resource_id(resource: FhirResource) -> Optional[str]:
    return resource.get("id")

MAPPING_TYPE_SPECS: Dict[MappingType, MappingTypeSpec] = {
    MappingType.SURGEON: MappingTypeSpec(
        mapping_type=MappingType.SURGEON,
        epic_resource_type="Practitioner",
        local_name=_surgeon_name,
        epic_display_name=_practitioner_display,
        epic_resource_id=_resource_id,
    ),
    MappingType.ROOM: MappingTypeSpec(
        mapping_type=MappingType.ROOM,
        epic_resource_type="Location",
        local_name=_named_row,
        epic_display_name=_location_display,
        epic_resource_id=_resource_id,
    ),
    # Service types are not resources; the appointment's service type text is
    # both the id and the display name
    MappingType.PROCEDURE: MappingTypeSpec(
        mapping_type=MappingType.PROCEDURE,
        epic_resource_type="ServiceType",
        local_name=_named_row,
        epic_display_name=extract_service_type,
        epic_resource_id=extract_service_type,
    ),
}

def spec_for(mapping_type) -> MappingTypeSpec:
    return MAPPING_TYPE_SPECS[MappingType(mapping_type)]
