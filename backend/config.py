import os
from typing import Optional
from dataclasses import dataclass
from functools import lru_cache

@dataclass
class DatabaseConfig:
    """Database configuration settings"""
    path: str = "epic_import.db"
    max_connections: int = 20
    connection_timeout: float = 30.0

@dataclass
class EpicConfig:
    """Epic FHIR integration settings"""
    default_fhir_base_url: str = "https://fhir.epic.com/interconnect-fhir-oauth/api/FHIR/R4"
    user_agent: str = "Epic-Case-Import/1.0"
    max_connections: int = 20
    appointment_page_size: int = 100
    directory_page_size: int = 200
    # Bounded fan-out; Epic rate limits per client
    import_concurrency: int = 4
    resolve_concurrency: int = 4

@dataclass
class AppConfig:
    """Main application configuration"""
    debug: bool = False
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list = None
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.cors_origins is None:
            self.cors_origins = ["*"]

@dataclass
class Config:
    """Complete application configuration"""
    app: AppConfig
    database: DatabaseConfig
    epic: EpicConfig

    @classmethod
    def from_env(cls) -> 'Config':
        """Create configuration from environment variables"""
        return cls(
            app=AppConfig(
                debug=os.getenv("DEBUG", "false").lower() == "true",
                host=os.getenv("HOST", "127.0.0.1"),
                port=int(os.getenv("PORT", "8000")),
                log_level=os.getenv("LOG_LEVEL", "INFO"),
                log_file=os.getenv("LOG_FILE") or None
            ),
            database=DatabaseConfig(
                path=os.getenv("DB_PATH", "epic_import.db"),
                max_connections=int(os.getenv("DB_MAX_CONNECTIONS", "20")),
                connection_timeout=float(os.getenv("DB_TIMEOUT", "30.0"))
            ),
            epic=EpicConfig(
                default_fhir_base_url=os.getenv(
                    "EPIC_DEFAULT_FHIR_BASE_URL",
                    "https://fhir.epic.com/interconnect-fhir-oauth/api/FHIR/R4"
                ),
                user_agent=os.getenv("EPIC_USER_AGENT", "Epic-Case-Import/1.0"),
                max_connections=int(os.getenv("EPIC_MAX_CONNECTIONS", "20")),
                appointment_page_size=int(os.getenv("EPIC_APPOINTMENT_PAGE_SIZE", "100")),
                directory_page_size=int(os.getenv("EPIC_DIRECTORY_PAGE_SIZE", "200")),
                import_concurrency=max(1, int(os.getenv("EPIC_IMPORT_CONCURRENCY", "4"))),
                resolve_concurrency=max(1, int(os.getenv("EPIC_RESOLVE_CONCURRENCY", "4")))
            )
        )

@lru_cache()
def get_config() -> Config:
    """Get cached configuration instance"""
    return Config.from_env()

def is_test_environment() -> bool:
    """Check if running in test environment"""
    return (
        'pytest' in __import__('sys').modules or
        bool(os.getenv("PYTEST_CURRENT_TEST") or os.getenv("PYTEST_ADDOPTS") or os.getenv("PYTEST_RUNNING"))
    )
