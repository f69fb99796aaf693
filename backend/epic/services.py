"""
Wiring of the Epic components

Every component receives its collaborators and its own component logger
here; the API layer only sees the assembled ``EpicServices``.
"""

from dataclasses import dataclass
from typing import Optional

from database import DatabaseManager, get_database
from http_client import HTTPClientManager, get_http_client
from local_db import LocalDatabase
from logging_config import get_component_logger

from .audit import EpicAuditLogger
from .auto_matcher import AutoMatcher
from .case_mapper import CaseMapper
from .dal import EpicDAL
from .fhir_client import FhirClient
from .import_service import EpicImportService
from .mapping_service import MappingService
from .token_manager import TokenManager

@dataclass
class EpicServices:
    dal: EpicDAL
    local_db: LocalDatabase
    audit: EpicAuditLogger
    token_manager: TokenManager
    fhir_client: FhirClient
    auto_matcher: AutoMatcher
    case_mapper: CaseMapper
    mappings: MappingService
    importer: EpicImportService

def build_epic_services(db: DatabaseManager, http: Optional[HTTPClientManager] = None) -> EpicServices:
    dal = EpicDAL(db)
    local_db = LocalDatabase(db)
    audit = EpicAuditLogger(db, logger=get_component_logger("audit"))
    token_manager = TokenManager(
        dal,
        http=http or get_http_client(),
        audit=audit,
        logger=get_component_logger("token-manager")
    )
    fhir_client = FhirClient(token_manager, logger=get_component_logger("fhir-client"))
    auto_matcher = AutoMatcher(dal, logger=get_component_logger("auto-matcher"))
    case_mapper = CaseMapper(dal, local_db, logger=get_component_logger("case-mapper"))
    return EpicServices(
        dal=dal,
        local_db=local_db,
        audit=audit,
        token_manager=token_manager,
        fhir_client=fhir_client,
        auto_matcher=auto_matcher,
        case_mapper=case_mapper,
        mappings=MappingService(dal, audit, logger=get_component_logger("mappings")),
        importer=EpicImportService(
            dal, local_db, fhir_client, case_mapper, auto_matcher, audit,
            logger=get_component_logger("import")
        ),
    )

# Global services
_epic_services: Optional[EpicServices] = None

def get_epic_services() -> EpicServices:
    """Get global Epic services (FastAPI dependency)"""
    global _epic_services
    if _epic_services is None:
        _epic_services = build_epic_services(get_database())
    return _epic_services

def reset_epic_services():
    global _epic_services
    _epic_services = None
