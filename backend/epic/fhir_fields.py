"""
Field extraction from FHIR resources
"""

from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional

from .models import FhirResource

MRN_TYPE_CODES = ("MR", "MRN")

class HumanName(NamedTuple):
    given: Optional[str]
    family: Optional[str]

def extract_name(names: Optional[List[Dict[str, Any]]]) -> HumanName:
    """First given name and family name, preferring the ``official`` name"""
    if not names:
        return HumanName(None, None)
    name = next((n for n in names if n.get("use") == "official"), names[0])
    given = name.get("given") or []
    return HumanName(given[0] if given else None, name.get("family"))

def format_name(name: HumanName) -> Optional[str]:
    """``"Family, Given"``; ``None`` without a family name"""
    if not name.family:
        return None
    return f"{name.family}, {name.given or ''}".strip()

def extract_mrn(identifiers: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    if not identifiers:
        return None

    for identifier in identifiers:
        codings = (identifier.get("type") or {}).get("coding")
        if codings:
            if any(c.get("code") in MRN_TYPE_CODES for c in codings):
                return identifier.get("value")
        elif "mrn" in (identifier.get("system") or "").lower():
            return identifier.get("value")

    return identifiers[0].get("value")

def extract_service_type(appointment: FhirResource) -> Optional[str]:
    service_types = appointment.get("serviceType") or []
    if not service_types:
        return None
    first = service_types[0]
    if first.get("text"):
        return first["text"]
    codings = first.get("coding") or []
    return codings[0].get("display") if codings else None

def _parse_start(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None

def iso_to_date(value: Optional[str]) -> Optional[str]:
    """``YYYY-MM-DD`` in the timestamp's own offset"""
    parsed = _parse_start(value)
    return parsed.date().isoformat() if parsed else None

def iso_to_time(value: Optional[str]) -> Optional[str]:
    """``HH:MM:SS`` in the timestamp's own offset"""
    parsed = _parse_start(value)
    return parsed.strftime("%H:%M:%S") if parsed else None
