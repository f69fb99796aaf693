from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel
from typing import List, Dict, Any, Optional

from config import get_config
from exceptions import (
    ConnectionNotFoundError,
    DatabaseError,
    FHIRConnectionError,
    FHIRDataError,
    MappingNotFoundError,
    TokenExpiredError,
    ValidationError,
)

from .import_service import NO_ACTIVE_CONNECTION_ERROR
from .models import EpicTokenResponse, MappingType
from .services import EpicServices, get_epic_services
from .token_manager import (
    NO_CONNECTION_ERROR,
    NO_TOKEN_ERROR,
    RATE_LIMITED_ERROR,
    TIMEOUT_ERROR,
    TOKEN_EXPIRED_ERROR,
    TOKEN_REJECTED_ERROR,
    get_token_expiry_info,
)

router = APIRouter(prefix="/epic", tags=["epic"])

TOKEN_ERRORS = (NO_TOKEN_ERROR, TOKEN_EXPIRED_ERROR, TOKEN_REJECTED_ERROR)
IMPORT_REQUIRED_ERROR = "facility_id and appointments array are required"

class ConnectionConfigRequest(BaseModel):
    client_id: str
    fhir_base_url: Optional[str] = None
    client_secret: Optional[str] = None
    sync_mode: Optional[str] = None

class TokenRequest(BaseModel):
    access_token: str
    expires_in: int
    token_type: Optional[str] = "Bearer"
    scope: Optional[str] = None
    refresh_token: Optional[str] = None

class AppointmentSelection(BaseModel):
    fhirAppointmentId: Optional[str] = None

class ImportRequest(BaseModel):
    facility_id: Optional[str] = None
    appointments: Optional[List[AppointmentSelection]] = None

class MappingRequest(BaseModel):
    facility_id: str
    connection_id: str
    mapping_type: MappingType
    epic_resource_id: str
    orbit_entity_id: Optional[str] = None
    epic_display_name: Optional[str] = None
    epic_resource_type: Optional[str] = None

class AutoMatchRequest(BaseModel):
    facility_id: str
    mapping_types: Optional[List[MappingType]] = None

class SyncRequest(BaseModel):
    facility_id: str
    date_from: Optional[str] = None
    date_to: Optional[str] = None

class FieldMappingUpdate(BaseModel):
    id: str
    orbit_table: Optional[str] = None
    orbit_column: Optional[str] = None
    label: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None

class FieldMappingsRequest(BaseModel):
    mappings: List[FieldMappingUpdate]

def raise_for_fhir_error(error: str):
    """Turn a FHIR or token error string into the matching domain exception"""
    if error == NO_CONNECTION_ERROR:
        raise ConnectionNotFoundError(error)
    if error in TOKEN_ERRORS:
        raise TokenExpiredError(error)
    if error in (TIMEOUT_ERROR, RATE_LIMITED_ERROR) or error.startswith("FHIR request error"):
        raise FHIRConnectionError(error)
    raise FHIRDataError(error)

def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise ValidationError("X-User-Id header is required")
    return user_id

async def _require_connection(services: EpicServices, facility_id: str) -> Dict[str, Any]:
    connection, error = await services.dal.get_connection(facility_id)
    if error:
        raise DatabaseError(error)
    if not connection:
        raise ConnectionNotFoundError(NO_CONNECTION_ERROR, details={"facility_id": facility_id})
    return connection

# Connections

@router.get("/connections/{facility_id}")
async def get_connection_status(facility_id: str, services: EpicServices = Depends(get_epic_services)):
    status, error = await services.dal.get_connection_status(facility_id)
    if error:
        raise DatabaseError(error)
    if not status:
        raise ConnectionNotFoundError(NO_CONNECTION_ERROR, details={"facility_id": facility_id})
    return {
        "connection": status,
        "tokenExpiry": get_token_expiry_info(status.get('token_expires_at')).to_dict()
    }

@router.put("/connections/{facility_id}")
async def save_connection(
    facility_id: str,
    req: ConnectionConfigRequest,
    x_user_id: Optional[str] = Header(None),
    services: EpicServices = Depends(get_epic_services)
):
    connection, error = await services.dal.upsert_connection(
        facility_id,
        fhir_base_url=req.fhir_base_url or get_config().epic.default_fhir_base_url,
        client_id=req.client_id,
        connected_by=x_user_id,
        sync_mode=req.sync_mode,
        client_secret=req.client_secret
    )
    if error:
        raise DatabaseError(error)
    status, _ = await services.dal.get_connection_status(facility_id)
    return {"connection": status or {"id": connection['id'], "status": connection['status']}}

@router.post("/connections/{facility_id}/token")
async def store_token(
    facility_id: str,
    req: TokenRequest,
    x_user_id: Optional[str] = Header(None),
    services: EpicServices = Depends(get_epic_services)
):
    user_id = _require_user(x_user_id)
    result = await services.token_manager.store_epic_token(
        facility_id, EpicTokenResponse.from_dict(req.model_dump()), user_id
    )
    if not result.success:
        if result.error == NO_CONNECTION_ERROR:
            raise ConnectionNotFoundError(result.error, details={"facility_id": facility_id})
        raise DatabaseError(result.error)
    return result.to_dict()

@router.delete("/connections/{facility_id}/token")
async def disconnect(
    facility_id: str,
    x_user_id: Optional[str] = Header(None),
    services: EpicServices = Depends(get_epic_services)
):
    result = await services.token_manager.clear_epic_token(facility_id, x_user_id)
    if not result.success:
        if result.error == NO_CONNECTION_ERROR:
            raise ConnectionNotFoundError(result.error, details={"facility_id": facility_id})
        raise DatabaseError(result.error)
    return result.to_dict()

# Appointments and import

@router.get("/appointments")
async def preview_appointments(
    facility_id: str,
    date_from: str,
    date_to: str,
    practitioner_id: Optional[str] = None,
    services: EpicServices = Depends(get_epic_services)
):
    previews, error = await services.importer.preview_appointments(facility_id, date_from, date_to, practitioner_id)
    if error:
        raise_for_fhir_error(error)
    return {"appointments": [p.to_dict() for p in previews], "count": len(previews)}

@router.post("/cases/import")
async def import_cases(
    req: ImportRequest,
    x_user_id: Optional[str] = Header(None),
    services: EpicServices = Depends(get_epic_services)
):
    appointment_ids = [a.fhirAppointmentId for a in req.appointments or [] if a.fhirAppointmentId]
    if not req.facility_id or not req.appointments or len(appointment_ids) != len(req.appointments):
        raise ValidationError(IMPORT_REQUIRED_ERROR)
    user_id = _require_user(x_user_id)

    batch = await services.importer.import_appointments(req.facility_id, appointment_ids, user_id)
    if batch.error == NO_ACTIVE_CONNECTION_ERROR:
        raise ValidationError(batch.error, details={"facility_id": req.facility_id})
    if batch.error:
        raise DatabaseError(batch.error)
    return batch.to_dict()

@router.get("/import-log/{facility_id}")
async def list_import_log(
    facility_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    services: EpicServices = Depends(get_epic_services)
):
    entries, error = await services.dal.list_import_log(facility_id, limit=limit, offset=offset)
    if error:
        raise DatabaseError(error)
    return {"entries": entries, "count": len(entries)}

# Entity mappings

@router.get("/mappings/{connection_id}")
async def list_mappings(
    connection_id: str,
    mapping_type: Optional[MappingType] = None,
    services: EpicServices = Depends(get_epic_services)
):
    mappings, error = await services.mappings.list_mappings(connection_id, mapping_type)
    if error:
        raise DatabaseError(error)
    return {"mappings": mappings}

@router.get("/mappings/{connection_id}/stats")
async def mapping_stats(connection_id: str, services: EpicServices = Depends(get_epic_services)):
    stats, error = await services.mappings.get_stats(connection_id)
    if error:
        raise DatabaseError(error)
    return {"stats": stats}

@router.put("/mappings")
async def save_mapping(
    req: MappingRequest,
    x_user_id: Optional[str] = Header(None),
    services: EpicServices = Depends(get_epic_services)
):
    mapping, error = await services.mappings.save_manual_mapping(
        req.facility_id,
        req.connection_id,
        req.mapping_type,
        req.epic_resource_id,
        req.orbit_entity_id,
        x_user_id,
        epic_display_name=req.epic_display_name,
        epic_resource_type=req.epic_resource_type
    )
    if error:
        raise DatabaseError(error)
    return {"mapping": mapping}

@router.delete("/mappings/{mapping_id}")
async def delete_mapping(
    mapping_id: str,
    x_user_id: Optional[str] = Header(None),
    services: EpicServices = Depends(get_epic_services)
):
    result = await services.mappings.delete_mapping(mapping_id, x_user_id)
    if not result.success:
        if result.error == "Mapping not found":
            raise MappingNotFoundError(result.error, details={"mapping_id": mapping_id})
        raise DatabaseError(result.error)
    return result.to_dict()

@router.post("/mappings/auto-match")
async def auto_match(
    req: AutoMatchRequest,
    x_user_id: Optional[str] = Header(None),
    services: EpicServices = Depends(get_epic_services)
):
    summaries, error = await services.importer.run_auto_match(req.facility_id, req.mapping_types, x_user_id)
    if error == NO_CONNECTION_ERROR:
        raise ConnectionNotFoundError(error, details={"facility_id": req.facility_id})
    if error:
        raise DatabaseError(error)
    return {"summaries": [s.to_dict() for s in summaries]}

@router.post("/mappings/sync")
async def sync_mappings(req: SyncRequest, services: EpicServices = Depends(get_epic_services)):
    await _require_connection(services, req.facility_id)
    counts, error = await services.importer.sync_entity_mappings(req.facility_id, req.date_from, req.date_to)
    # Partial syncs still report what was seeded
    return {"inserted": counts, "error": error}

# Field mappings

@router.get("/field-mappings")
async def list_field_mappings(active_only: bool = False, services: EpicServices = Depends(get_epic_services)):
    mappings, error = await services.mappings.list_field_mappings(active_only)
    if error:
        raise DatabaseError(error)
    return {"mappings": mappings}

@router.put("/field-mappings")
async def update_field_mappings(
    req: FieldMappingsRequest,
    x_user_id: Optional[str] = Header(None),
    services: EpicServices = Depends(get_epic_services)
):
    if not req.mappings:
        raise ValidationError("mappings array is required")
    updates = [m.model_dump(exclude_unset=True) for m in req.mappings]
    result = await services.mappings.update_field_mappings(updates, x_user_id)
    if not result.success:
        if result.error.startswith("Cannot update"):
            raise ValidationError(result.error)
        raise DatabaseError(result.error)
    return result.to_dict()

@router.post("/field-mappings/reset")
async def reset_field_mappings(
    x_user_id: Optional[str] = Header(None),
    services: EpicServices = Depends(get_epic_services)
):
    result = await services.mappings.reset_field_mappings(x_user_id)
    if not result.success:
        raise DatabaseError(result.error)
    return result.to_dict()
