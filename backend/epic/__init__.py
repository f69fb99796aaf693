"""
Epic Integration Package

Connects a facility to its Epic FHIR server, keeps Epic practitioners,
locations and service types mapped to local surgeons, rooms and procedure
types, and imports surgical appointments as cases exactly once.
"""

from .auto_matcher import AutoMatcher
from .case_mapper import CaseMapper
from .dal import EpicDAL
from .fhir_client import FhirClient
from .import_service import EpicImportService
from .token_manager import TokenManager, get_token_expiry_info

__all__ = [
    'AutoMatcher',
    'CaseMapper',
    'EpicDAL',
    'FhirClient',
    'EpicImportService',
    'TokenManager',
    'get_token_expiry_info'
]
