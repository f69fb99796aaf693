"""
Facility store

Local patients, cases, and the surgeon / room / procedure lookups the Epic
import resolves against. Every call returns a ``DALResult`` instead of raising.
"""

from typing import Dict, Any
import logging
from database import DatabaseManager, DALResult, new_id
from exceptions import DatabaseError

logger = logging.getLogger(__name__)

CASE_PROCEDURE_PARAMS = (
    'p_case_number', 'p_scheduled_date', 'p_start_time', 'p_or_room_id',
    'p_procedure_type_id', 'p_status_id', 'p_surgeon_id', 'p_facility_id',
    'p_created_by', 'p_operative_side', 'p_payer_id', 'p_notes',
    'p_rep_required_override', 'p_staff_assignments', 'p_patient_id', 'p_source',
)

class LocalDatabase:
    def __init__(self, db: DatabaseManager):
        self.db = db

    # Patients

    async def find_patient_by_mrn(self, facility_id: str, mrn: str) -> DALResult:
        try:
            row = self.db.execute_single(
                "SELECT id, first_name, last_name, mrn, date_of_birth FROM patients WHERE facility_id = ? AND mrn = ? LIMIT 1",
                (facility_id, mrn)
            )
            return DALResult(row, None)
        except DatabaseError as e:
            return DALResult(None, e.message)

    async def create_patient(self, patient: Dict[str, Any]) -> DALResult:
        patient_id = new_id()
        try:
            self.db.execute_update(
                """
                INSERT INTO patients (id, facility_id, first_name, last_name, mrn, date_of_birth)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    patient_id,
                    patient['facility_id'],
                    patient.get('first_name'),
                    patient.get('last_name'),
                    patient.get('mrn'),
                    patient.get('date_of_birth'),
                )
            )
            return DALResult({'id': patient_id}, None)
        except DatabaseError as e:
            return DALResult(None, e.message)

    # Case statuses

    async def get_case_status_id(self, name: str) -> DALResult:
        try:
            row = self.db.execute_single("SELECT id FROM case_statuses WHERE name = ?", (name,))
            return DALResult(row['id'] if row else None, None if row else f"Case status '{name}' not found")
        except DatabaseError as e:
            return DALResult(None, e.message)

    # Cases

    async def create_case_with_milestones(self, params: Dict[str, Any]) -> DALResult:
        """Create a case and its milestone rows in one transaction.

        ``params`` uses the procedure's ``p_*`` argument names. Returns the new
        case id; on any failure nothing is written.
        """
        unknown = set(params) - set(CASE_PROCEDURE_PARAMS)
        if unknown:
            return DALResult(None, f"Unknown case parameters: {', '.join(sorted(unknown))}")
        for required in ('p_case_number', 'p_facility_id', 'p_status_id'):
            if not params.get(required):
                return DALResult(None, f"Missing required parameter {required}")

        case_id = new_id()
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO cases (
                        id, case_number, facility_id, scheduled_date, start_time, or_room_id,
                        procedure_type_id, status_id, surgeon_id, patient_id, operative_side,
                        payer_id, notes, source, created_by
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        case_id,
                        params['p_case_number'],
                        params['p_facility_id'],
                        params.get('p_scheduled_date'),
                        params.get('p_start_time'),
                        params.get('p_or_room_id'),
                        params.get('p_procedure_type_id'),
                        params['p_status_id'],
                        params.get('p_surgeon_id'),
                        params.get('p_patient_id'),
                        params.get('p_operative_side'),
                        params.get('p_payer_id'),
                        params.get('p_notes'),
                        params.get('p_source') or 'manual',
                        params.get('p_created_by'),
                    )
                )
                milestones = conn.execute(
                    """
                    SELECT id FROM facility_milestones
                    WHERE facility_id = ? AND is_active = 1
                    ORDER BY display_order
                    """,
                    (params['p_facility_id'],)
                ).fetchall()
                for milestone in milestones:
                    conn.execute(
                        "INSERT INTO case_milestones (id, case_id, facility_milestone_id) VALUES (?, ?, ?)",
                        (new_id(), case_id, milestone['id'])
                    )
            logger.info(f"Created case {params['p_case_number']} with {len(milestones)} milestones")
            return DALResult(case_id, None)
        except DatabaseError as e:
            logger.error(f"create_case_with_milestones failed for {params['p_case_number']}: {e.message}")
            return DALResult(None, e.message)

    async def get_case(self, case_id: str) -> DALResult:
        try:
            return DALResult(self.db.execute_single("SELECT * FROM cases WHERE id = ?", (case_id,)), None)
        except DatabaseError as e:
            return DALResult(None, e.message)

    async def list_case_milestones(self, case_id: str) -> DALResult:
        try:
            return DALResult(
                self.db.execute_query("SELECT * FROM case_milestones WHERE case_id = ?", (case_id,)),
                None
            )
        except DatabaseError as e:
            return DALResult([], e.message)

    # Lookups the matcher and mapper resolve against

    async def list_surgeons(self, facility_id: str) -> DALResult:
        return self._list(
            "SELECT id, first_name, last_name FROM surgeons WHERE facility_id = ? AND is_active = 1 ORDER BY last_name, first_name",
            (facility_id,)
        )

    async def list_rooms(self, facility_id: str) -> DALResult:
        return self._list(
            "SELECT id, name FROM rooms WHERE facility_id = ? AND is_active = 1 ORDER BY name",
            (facility_id,)
        )

    async def list_procedure_types(self, facility_id: str) -> DALResult:
        return self._list(
            "SELECT id, name FROM procedure_types WHERE facility_id = ? AND is_active = 1 ORDER BY name",
            (facility_id,)
        )

    def _list(self, sql: str, params: tuple) -> DALResult:
        try:
            return DALResult(self.db.execute_query(sql, params), None)
        except DatabaseError as e:
            return DALResult([], e.message)

    # Reference data writers (admin screens and fixtures)

    def add_surgeon(self, facility_id: str, first_name: str, last_name: str) -> str:
        surgeon_id = new_id()
        self.db.execute_update(
            "INSERT INTO surgeons (id, facility_id, first_name, last_name) VALUES (?, ?, ?, ?)",
            (surgeon_id, facility_id, first_name, last_name)
        )
        return surgeon_id

    def add_room(self, facility_id: str, name: str) -> str:
        room_id = new_id()
        self.db.execute_update(
            "INSERT INTO rooms (id, facility_id, name) VALUES (?, ?, ?)",
            (room_id, facility_id, name)
        )
        return room_id

    def add_procedure_type(self, facility_id: str, name: str) -> str:
        procedure_id = new_id()
        self.db.execute_update(
            "INSERT INTO procedure_types (id, facility_id, name) VALUES (?, ?, ?)",
            (procedure_id, facility_id, name)
        )
        return procedure_id

    def add_facility_milestone(self, facility_id: str, name: str, display_order: int = 0) -> str:
        milestone_id = new_id()
        self.db.execute_update(
            "INSERT INTO facility_milestones (id, facility_id, name, display_order) VALUES (?, ?, ?, ?)",
            (milestone_id, facility_id, name, display_order)
        )
        return milestone_id

    def count_patients(self, facility_id: str) -> int:
        row = self.db.execute_single("SELECT COUNT(*) AS n FROM patients WHERE facility_id = ?", (facility_id,))
        return row['n'] if row else 0
