import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, NamedTuple, Tuple
from contextlib import contextmanager
import logging
from config import get_config
from exceptions import DatabaseError

logger = logging.getLogger(__name__)

class DALResult(NamedTuple):
    """``(data, error)`` pair returned by every data-access call"""
    data: Any
    error: Optional[str]

def new_id() -> str:
    return str(uuid.uuid4())

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

DEFAULT_FIELD_MAPPINGS: List[Dict[str, str]] = [
    {'fhir_resource_type': 'Appointment', 'fhir_field_path': 'start', 'orbit_table': 'cases', 'orbit_column': 'scheduled_date',
     'label': 'Surgery Date', 'description': 'Maps appointment start date to case scheduled date'},
    {'fhir_resource_type': 'Appointment', 'fhir_field_path': 'start', 'orbit_table': 'cases', 'orbit_column': 'start_time',
     'label': 'Surgery Time', 'description': 'Maps appointment start time to case start time'},
    {'fhir_resource_type': 'Appointment', 'fhir_field_path': 'serviceType', 'orbit_table': 'cases', 'orbit_column': 'procedure_type_id',
     'label': 'Procedure Type', 'description': 'Maps service type to procedure type (via entity mapping)'},
    {'fhir_resource_type': 'Patient', 'fhir_field_path': 'name.family', 'orbit_table': 'patients', 'orbit_column': 'last_name',
     'label': 'Patient Last Name', 'description': 'Maps patient family name'},
    {'fhir_resource_type': 'Patient', 'fhir_field_path': 'name.given', 'orbit_table': 'patients', 'orbit_column': 'first_name',
     'label': 'Patient First Name', 'description': 'Maps patient given name'},
    {'fhir_resource_type': 'Patient', 'fhir_field_path': 'birthDate', 'orbit_table': 'patients', 'orbit_column': 'date_of_birth',
     'label': 'Date of Birth', 'description': 'Maps patient birth date'},
    {'fhir_resource_type': 'Patient', 'fhir_field_path': 'identifier[MRN]', 'orbit_table': 'patients', 'orbit_column': 'mrn',
     'label': 'Medical Record Number', 'description': 'Maps patient MRN identifier'},
    {'fhir_resource_type': 'Practitioner', 'fhir_field_path': 'name', 'orbit_table': 'surgeons', 'orbit_column': 'id',
     'label': 'Surgeon', 'description': 'Maps practitioner to surgeon (via entity mapping)'},
    {'fhir_resource_type': 'Location', 'fhir_field_path': 'name', 'orbit_table': 'rooms', 'orbit_column': 'id',
     'label': 'Operating Room', 'description': 'Maps location to room (via entity mapping)'},
]

DEFAULT_CASE_STATUSES = ['scheduled', 'in_progress', 'completed', 'cancelled']

class DatabaseConnectionPool:
    """Thread-safe SQLite connection pool"""

    def __init__(self, db_path: str, max_connections: int = 10, timeout: float = 30.0):
        self.db_path = db_path
        self.max_connections = max_connections
        self.timeout = timeout
        self._connections: List[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._in_use = set()

    @contextmanager
    def get_connection(self):
        """Get a database connection from the pool"""
        conn = None
        try:
            with self._lock:
                if self._connections:
                    conn = self._connections.pop()
                else:
                    conn = self._create_connection()

                self._in_use.add(conn)

            yield conn
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            raise DatabaseError(f"Database operation failed: {e}")
        finally:
            if conn:
                with self._lock:
                    self._in_use.discard(conn)
                    if len(self._connections) < self.max_connections:
                        self._connections.append(conn)
                    else:
                        conn.close()

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection with proper configuration"""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, check_same_thread=False)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA temp_store = MEMORY")
        conn.row_factory = sqlite3.Row
        return conn

    def close_all(self):
        """Close all connections in the pool"""
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()

            for conn in self._in_use:
                conn.close()
            self._in_use.clear()

class DatabaseManager:
    """Database manager with error handling and transaction support"""

    def __init__(self, db_path: Optional[str] = None, max_connections: Optional[int] = None):
        config = get_config()
        self.db_path = db_path or config.database.path
        self.pool = DatabaseConnectionPool(
            self.db_path,
            max_connections or config.database.max_connections,
            timeout=config.database.connection_timeout
        )
        self._init_database()

    def _init_database(self):
        """Initialize database schema"""
        with self.transaction() as conn:
            self._create_tables(conn)
            self._create_indexes(conn)
            self._seed_reference_data(conn)

    def _create_tables(self, conn: sqlite3.Connection):
        """Create database tables"""
        tables = {
            'epic_connections': """
                CREATE TABLE IF NOT EXISTS epic_connections (
                    id TEXT PRIMARY KEY,
                    facility_id TEXT NOT NULL UNIQUE,
                    fhir_base_url TEXT NOT NULL,
                    client_id TEXT NOT NULL,
                    client_secret TEXT,
                    access_token TEXT,
                    refresh_token TEXT,
                    token_expires_at TEXT,
                    token_scopes TEXT,
                    status TEXT NOT NULL DEFAULT 'disconnected'
                        CHECK (status IN ('disconnected', 'connected', 'error', 'token_expired')),
                    last_connected_at TEXT,
                    last_error TEXT,
                    sync_mode TEXT NOT NULL DEFAULT 'manual'
                        CHECK (sync_mode IN ('manual', 'scheduled')),
                    connected_by TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """,
            'epic_entity_mappings': """
                CREATE TABLE IF NOT EXISTS epic_entity_mappings (
                    id TEXT PRIMARY KEY,
                    facility_id TEXT NOT NULL,
                    connection_id TEXT NOT NULL,
                    mapping_type TEXT NOT NULL
                        CHECK (mapping_type IN ('surgeon', 'room', 'procedure')),
                    epic_resource_type TEXT NOT NULL,
                    epic_resource_id TEXT NOT NULL,
                    epic_display_name TEXT,
                    orbit_entity_id TEXT,
                    match_method TEXT NOT NULL DEFAULT 'manual'
                        CHECK (match_method IN ('auto', 'manual')),
                    match_confidence REAL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (connection_id, mapping_type, epic_resource_id),
                    FOREIGN KEY (connection_id) REFERENCES epic_connections (id) ON DELETE CASCADE
                )
            """,
            'epic_field_mappings': """
                CREATE TABLE IF NOT EXISTS epic_field_mappings (
                    id TEXT PRIMARY KEY,
                    fhir_resource_type TEXT NOT NULL,
                    fhir_field_path TEXT NOT NULL,
                    orbit_table TEXT NOT NULL,
                    orbit_column TEXT NOT NULL,
                    label TEXT NOT NULL,
                    description TEXT,
                    is_default INTEGER NOT NULL DEFAULT 1,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (fhir_resource_type, fhir_field_path, orbit_table, orbit_column)
                )
            """,
            'epic_import_log': """
                CREATE TABLE IF NOT EXISTS epic_import_log (
                    id TEXT PRIMARY KEY,
                    facility_id TEXT NOT NULL,
                    connection_id TEXT NOT NULL,
                    fhir_appointment_id TEXT,
                    orbit_case_id TEXT,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'success', 'failed', 'skipped', 'duplicate')),
                    error_message TEXT,
                    fhir_resource_snapshot TEXT,
                    field_mapping_applied TEXT,
                    imported_by TEXT NOT NULL,
                    imported_at TEXT NOT NULL
                )
            """,
            'patients': """
                CREATE TABLE IF NOT EXISTS patients (
                    id TEXT PRIMARY KEY,
                    facility_id TEXT NOT NULL,
                    first_name TEXT,
                    last_name TEXT,
                    mrn TEXT,
                    date_of_birth TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """,
            'surgeons': """
                CREATE TABLE IF NOT EXISTS surgeons (
                    id TEXT PRIMARY KEY,
                    facility_id TEXT NOT NULL,
                    first_name TEXT,
                    last_name TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """,
            'rooms': """
                CREATE TABLE IF NOT EXISTS rooms (
                    id TEXT PRIMARY KEY,
                    facility_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """,
            'procedure_types': """
                CREATE TABLE IF NOT EXISTS procedure_types (
                    id TEXT PRIMARY KEY,
                    facility_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """,
            'case_statuses': """
                CREATE TABLE IF NOT EXISTS case_statuses (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE
                )
            """,
            'facility_milestones': """
                CREATE TABLE IF NOT EXISTS facility_milestones (
                    id TEXT PRIMARY KEY,
                    facility_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    display_order INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """,
            'cases': """
                CREATE TABLE IF NOT EXISTS cases (
                    id TEXT PRIMARY KEY,
                    case_number TEXT NOT NULL,
                    facility_id TEXT NOT NULL,
                    scheduled_date TEXT,
                    start_time TEXT,
                    or_room_id TEXT,
                    procedure_type_id TEXT,
                    status_id TEXT NOT NULL,
                    surgeon_id TEXT,
                    patient_id TEXT,
                    operative_side TEXT,
                    payer_id TEXT,
                    notes TEXT,
                    source TEXT NOT NULL DEFAULT 'manual',
                    created_by TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (facility_id, case_number),
                    FOREIGN KEY (status_id) REFERENCES case_statuses (id),
                    FOREIGN KEY (patient_id) REFERENCES patients (id) ON DELETE SET NULL
                )
            """,
            'case_milestones': """
                CREATE TABLE IF NOT EXISTS case_milestones (
                    id TEXT PRIMARY KEY,
                    case_id TEXT NOT NULL,
                    facility_milestone_id TEXT NOT NULL,
                    recorded_at TEXT,
                    FOREIGN KEY (case_id) REFERENCES cases (id) ON DELETE CASCADE
                )
            """,
            'audit_log': """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id TEXT PRIMARY KEY,
                    facility_id TEXT,
                    user_id TEXT,
                    action TEXT NOT NULL,
                    target_type TEXT,
                    target_id TEXT,
                    target_label TEXT,
                    metadata TEXT,
                    success INTEGER NOT NULL DEFAULT 1,
                    error_message TEXT,
                    created_at TEXT NOT NULL
                )
            """
        }

        for table_name, create_sql in tables.items():
            try:
                conn.execute(create_sql)
                logger.debug(f"Created/verified table: {table_name}")
            except sqlite3.Error as e:
                logger.error(f"Error creating table {table_name}: {e}")
                raise DatabaseError(f"Failed to create table {table_name}: {e}")

    def _create_indexes(self, conn: sqlite3.Connection):
        """Create database indexes for lookups used by the import path"""
        indexes = [
            "CREATE INDEX IF NOT EXISTS idx_epic_entity_mappings_connection ON epic_entity_mappings(connection_id)",
            "CREATE INDEX IF NOT EXISTS idx_epic_entity_mappings_lookup ON epic_entity_mappings(connection_id, mapping_type, epic_resource_id)",
            "CREATE INDEX IF NOT EXISTS idx_epic_import_log_facility ON epic_import_log(facility_id, imported_at)",
            "CREATE INDEX IF NOT EXISTS idx_epic_import_log_appointment ON epic_import_log(facility_id, fhir_appointment_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_patients_facility_mrn ON patients(facility_id, mrn)",
            "CREATE INDEX IF NOT EXISTS idx_cases_facility ON cases(facility_id)",
            "CREATE INDEX IF NOT EXISTS idx_case_milestones_case ON case_milestones(case_id)",
            "CREATE INDEX IF NOT EXISTS idx_audit_log_facility ON audit_log(facility_id, created_at)"
        ]

        for index_sql in indexes:
            try:
                conn.execute(index_sql)
            except sqlite3.Error as e:
                logger.warning(f"Error creating index: {e}")

    def _seed_reference_data(self, conn: sqlite3.Connection):
        """Seed case statuses and default field mappings on a fresh database"""
        for name in DEFAULT_CASE_STATUSES:
            conn.execute(
                "INSERT OR IGNORE INTO case_statuses (id, name) VALUES (?, ?)",
                (new_id(), name)
            )

        count = conn.execute("SELECT COUNT(*) FROM epic_field_mappings").fetchone()[0]
        if count == 0:
            insert_default_field_mappings(conn)

    @contextmanager
    def transaction(self):
        """Context manager for database transactions"""
        with self.pool.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def execute_query(self, sql: str, params: Tuple = ()) -> List[Dict]:
        """Execute a query and return results as list of dictionaries"""
        with self.pool.get_connection() as conn:
            cursor = conn.execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]

    def execute_single(self, sql: str, params: Tuple = ()) -> Optional[Dict]:
        """Execute a query and return single result"""
        with self.pool.get_connection() as conn:
            cursor = conn.execute(sql, params)
            row = cursor.fetchone()
            return dict(row) if row else None

    def execute_update(self, sql: str, params: Tuple = ()) -> int:
        """Execute an update/insert/delete, commit, and return affected rows"""
        with self.transaction() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount

    def close(self):
        """Close all database connections"""
        self.pool.close_all()

def insert_default_field_mappings(conn: sqlite3.Connection):
    for mapping in DEFAULT_FIELD_MAPPINGS:
        conn.execute(
            """
            INSERT INTO epic_field_mappings
                (id, fhir_resource_type, fhir_field_path, orbit_table, orbit_column, label, description)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                new_id(),
                mapping['fhir_resource_type'],
                mapping['fhir_field_path'],
                mapping['orbit_table'],
                mapping['orbit_column'],
                mapping['label'],
                mapping['description'],
            )
        )

# Global database manager
_database_manager: Optional[DatabaseManager] = None

def get_database() -> DatabaseManager:
    """Get global database manager"""
    global _database_manager
    if _database_manager is None:
        _database_manager = DatabaseManager()
    return _database_manager

def close_database():
    global _database_manager
    if _database_manager:
        _database_manager.close()
        _database_manager = None
