"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from ..config import AppConfig


LOGGER = logging.getLogger(__name__)


ADMIN_USER = "AdminUser"
END_USER = "EndUser"

INSTRUCTOR = "Instructor"
TA = "Ta"
STUDENT = "Student"
ADMIN_ROLE = "AdminRole"
ROLE_TYPES = (INSTRUCTOR, TA, STUDENT, ADMIN_ROLE)


# Columns stored on ``assignments``; everything else lives on ``assignment_properties``.
ASSIGNMENT_COLUMNS: Tuple[str, ...] = (
    "short_identifier",
    "description",
    "message",
    "due_date",
    "is_hidden",
)

PROPERTY_COLUMNS: Tuple[str, ...] = (
    "repository_folder",
    "token_period",
    "unlimited_tokens",
    "scanned_exam",
    "only_required_files",
    "remote_autotest_settings_id",
    "group_min",
    "group_max",
    "tokens_per_period",
    "allow_web_submits",
    "student_form_groups",
    "remark_due_date",
    "remark_message",
    "assign_graders_to_criteria",
    "enable_test",
    "enable_student_tests",
    "allow_remarks",
    "display_grader_names_to_students",
    "display_median_to_students",
    "group_name_autogenerated",
    "vcs_submit",
    "has_peer_review",
)

ASSIGNMENT_FIELD_TYPES: Dict[str, type] = {
    "short_identifier": str,
    "description": str,
    "message": str,
    "due_date": datetime,
    "is_hidden": bool,
    "repository_folder": str,
    "token_period": float,
    "unlimited_tokens": bool,
    "scanned_exam": bool,
    "only_required_files": bool,
    "remote_autotest_settings_id": int,
    "group_min": int,
    "group_max": int,
    "tokens_per_period": int,
    "allow_web_submits": bool,
    "student_form_groups": bool,
    "remark_due_date": datetime,
    "remark_message": str,
    "assign_graders_to_criteria": bool,
    "enable_test": bool,
    "enable_student_tests": bool,
    "allow_remarks": bool,
    "display_grader_names_to_students": bool,
    "display_median_to_students": bool,
    "group_name_autogenerated": bool,
    "vcs_submit": bool,
    "has_peer_review": bool,
}

COURSE_COLUMNS: Tuple[str, ...] = (
    "name",
    "display_name",
    "is_hidden",
    "max_file_size",
    "autotest_setting_id",
)

EXAM_TEMPLATE_COLUMNS: Tuple[str, ...] = (
    "name",
    "filename",
    "num_pages",
    "automatic_parsing",
    "cover_x",
    "cover_y",
    "cover_width",
    "cover_height",
)


def to_db_datetime(value: Optional[datetime]) -> Optional[str]:
    """Serialise *value* as a UTC ISO-8601 string with second precision."""

    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def from_db_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_db_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return to_db_datetime(value)
    return value


@dataclass
class UserRecord:
    id: int
    user_name: str
    first_name: str
    last_name: str
    email: Optional[str]
    id_number: Optional[str]
    type: str

    @property
    def is_admin(self) -> bool:
        return self.type == ADMIN_USER


@dataclass
class CourseRecord:
    id: int
    name: str
    display_name: str
    is_hidden: bool
    max_file_size: int
    autotest_setting_id: Optional[int]


@dataclass
class SectionRecord:
    id: int
    course_id: int
    name: str


@dataclass
class RoleRecord:
    id: int
    user_id: int
    course_id: int
    type: str
    section_id: Optional[int]
    hidden: bool


@dataclass
class StudentRecord:
    user_name: str
    last_name: str
    first_name: str
    section_name: Optional[str]
    id_number: Optional[str]
    email: Optional[str]


@dataclass
class AssignmentRecord:
    id: int
    course_id: int
    short_identifier: str
    description: str
    message: Optional[str]
    due_date: datetime
    is_hidden: bool
    repository_folder: str
    token_period: Optional[float]
    unlimited_tokens: bool
    scanned_exam: bool
    only_required_files: bool
    remote_autotest_settings_id: Optional[int]
    group_min: int
    group_max: int
    tokens_per_period: int
    allow_web_submits: bool
    student_form_groups: bool
    remark_due_date: Optional[datetime]
    remark_message: Optional[str]
    assign_graders_to_criteria: bool
    enable_test: bool
    enable_student_tests: bool
    allow_remarks: bool
    display_grader_names_to_students: bool
    display_median_to_students: bool
    group_name_autogenerated: bool
    vcs_submit: bool
    has_peer_review: bool


@dataclass
class AssignmentFileRecord:
    id: int
    assignment_id: int
    filename: str


@dataclass
class AutotestSettingRecord:
    id: int
    url: str
    api_key: str
    schema: str


@dataclass
class LtiClientRecord:
    id: int
    client_id: str
    host: str


@dataclass
class LtiDeploymentRecord:
    id: int
    lti_client_id: int
    external_deployment_id: str
    course_id: Optional[int]
    lms_course_name: Optional[str]
    lms_course_id: Optional[str]


@dataclass
class ExamTemplateRecord:
    id: int
    assignment_id: int
    name: str
    filename: str
    num_pages: int
    automatic_parsing: bool
    cover_x: Optional[float]
    cover_y: Optional[float]
    cover_width: Optional[float]
    cover_height: Optional[float]

    @property
    def crop_box(self) -> Optional[Tuple[float, float, float, float]]:
        values = (self.cover_x, self.cover_y, self.cover_width, self.cover_height)
        if any(value is None for value in values):
            return None
        return values  # type: ignore[return-value]


@dataclass
class TemplateDivisionRecord:
    id: int
    exam_template_id: int
    label: str
    start_page: int
    end_page: int
    assignment_file_id: Optional[int]


_ASSIGNMENT_SELECT = (
    "SELECT a.id, a.course_id, "
    + ", ".join(f"a.{column}" for column in ASSIGNMENT_COLUMNS)
    + ", "
    + ", ".join(f"p.{column}" for column in PROPERTY_COLUMNS)
    + " FROM assignments a JOIN assignment_properties p ON p.assignment_id = a.id"
)

_BOOLEAN_ASSIGNMENT_FIELDS = frozenset(
    name for name, kind in ASSIGNMENT_FIELD_TYPES.items() if kind is bool
)


def _course_from_row(row: sqlite3.Row) -> CourseRecord:
    data = dict(row)
    data["is_hidden"] = bool(data["is_hidden"])
    return CourseRecord(**data)


def _assignment_from_row(row: sqlite3.Row) -> AssignmentRecord:
    data = dict(row)
    for name in _BOOLEAN_ASSIGNMENT_FIELDS:
        data[name] = bool(data[name])
    data["due_date"] = from_db_datetime(data["due_date"])
    data["remark_due_date"] = from_db_datetime(data["remark_due_date"])
    return AssignmentRecord(**data)


def _template_from_row(row: sqlite3.Row) -> ExamTemplateRecord:
    data = dict(row)
    data["automatic_parsing"] = bool(data["automatic_parsing"])
    return ExamTemplateRecord(**data)


AssignmentChange = Tuple[Optional[int], Mapping[str, Any]]


class CourseRepository:
    """CRUD helpers for courses, assignments, LTI deployments and exam templates."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting database events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        """Report the duration and outcome of *action* to the event emitter."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        else:
            event_payload.setdefault("status", "ok")
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            filtered = {key: value for key, value in event_payload.items() if value is not None}
            self._event_emitter(action, payload=filtered, duration_ms=duration_ms)

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] = (),
    ) -> sqlite3.Cursor:
        return connection.execute(statement, tuple(parameters))

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @contextlib.contextmanager
    def _transaction(self, action: str, **payload: Any) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose work is committed atomically, then closed."""

        with self._track_db_event(action, **payload):
            connection = self._connect()
            try:
                with connection:
                    yield connection
            finally:
                connection.close()

    def _fetch_one(self, action: str, statement: str, parameters: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._transaction(action) as connection:
            return self._execute(connection, statement, parameters).fetchone()

    def _fetch_all(self, action: str, statement: str, parameters: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._transaction(action) as connection:
            return list(self._execute(connection, statement, parameters).fetchall())

    def _insert(self, action: str, table: str, values: Mapping[str, Any]) -> int:
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self._transaction(action, table=table) as connection:
            cursor = self._execute(
                connection,
                f"INSERT INTO {table}({columns}) VALUES ({placeholders})",
                [_to_db_value(value) for value in values.values()],
            )
            return int(cursor.lastrowid)

    @staticmethod
    def _update_statement(table: str, key: str, fields: Mapping[str, Any]) -> Tuple[str, List[Any]]:
        assignments = ", ".join(f"{column} = ?" for column in fields)
        return (
            f"UPDATE {table} SET {assignments} WHERE {key} = ?",
            [_to_db_value(value) for value in fields.values()],
        )

    # ---------------------------------------------------------------------
    # Users
    # ---------------------------------------------------------------------
    def add_user(
        self,
        user_name: str,
        first_name: str = "",
        last_name: str = "",
        *,
        email: Optional[str] = None,
        id_number: Optional[str] = None,
        admin: bool = False,
    ) -> int:
        LOGGER.debug("Adding user '%s' (admin=%s)", user_name, admin)
        return self._insert(
            "add_user",
            "users",
            {
                "user_name": user_name,
                "first_name": first_name,
                "last_name": last_name,
                "email": email,
                "id_number": id_number,
                "type": ADMIN_USER if admin else END_USER,
            },
        )

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        row = self._fetch_one("get_user", "SELECT * FROM users WHERE id = ?", (user_id,))
        return UserRecord(**row) if row else None

    def find_user_by_name(self, user_name: str) -> Optional[UserRecord]:
        row = self._fetch_one(
            "find_user_by_name", "SELECT * FROM users WHERE user_name = ?", (user_name,)
        )
        return UserRecord(**row) if row else None

    # ---------------------------------------------------------------------
    # Courses
    # ---------------------------------------------------------------------
    def add_course(
        self,
        name: str,
        display_name: str,
        *,
        is_hidden: bool = True,
        max_file_size: int = 5_000_000,
    ) -> int:
        LOGGER.debug("Adding course '%s' (hidden=%s)", name, is_hidden)
        course_id = self._insert(
            "add_course",
            "courses",
            {
                "name": name,
                "display_name": display_name,
                "is_hidden": is_hidden,
                "max_file_size": max_file_size,
            },
        )
        LOGGER.debug("Course '%s' inserted with id=%s", name, course_id)
        return course_id

    def get_course(self, course_id: int) -> Optional[CourseRecord]:
        row = self._fetch_one("get_course", "SELECT * FROM courses WHERE id = ?", (course_id,))
        return _course_from_row(row) if row else None

    def find_course_by_name(self, name: str) -> Optional[CourseRecord]:
        row = self._fetch_one(
            "find_course_by_name", "SELECT * FROM courses WHERE name = ?", (name,)
        )
        return _course_from_row(row) if row else None

    def iter_courses(self) -> Iterator[CourseRecord]:
        rows = self._fetch_all("iter_courses", "SELECT * FROM courses ORDER BY name, id")
        for row in rows:
            yield _course_from_row(row)

    def iter_courses_for_user(
        self, user_id: int, *, role_types: Sequence[str] = ROLE_TYPES
    ) -> Iterator[CourseRecord]:
        placeholders = ", ".join("?" for _ in role_types)
        rows = self._fetch_all(
            "iter_courses_for_user",
            f"""
            SELECT c.* FROM courses c
            JOIN roles r ON r.course_id = c.id
            WHERE r.user_id = ? AND r.type IN ({placeholders})
            ORDER BY c.name, c.id
            """,
            (user_id, *role_types),
        )
        for row in rows:
            yield _course_from_row(row)

    def update_course(self, course_id: int, **fields: Any) -> None:
        unknown = set(fields) - set(COURSE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown course fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        statement, parameters = self._update_statement("courses", "id", fields)
        with self._transaction("update_course", course_id=course_id) as connection:
            self._execute(connection, statement, [*parameters, course_id])

    def remove_course(self, course_id: int) -> None:
        with self._transaction("remove_course", course_id=course_id) as connection:
            self._execute(connection, "DELETE FROM courses WHERE id = ?", (course_id,))

    # ---------------------------------------------------------------------
    # Sections and roles
    # ---------------------------------------------------------------------
    def add_section(self, course_id: int, name: str) -> int:
        return self._insert("add_section", "sections", {"course_id": course_id, "name": name})

    def find_section(self, course_id: int, name: str) -> Optional[SectionRecord]:
        row = self._fetch_one(
            "find_section",
            "SELECT * FROM sections WHERE course_id = ? AND name = ?",
            (course_id, name),
        )
        return SectionRecord(**row) if row else None

    def add_role(
        self,
        user_id: int,
        course_id: int,
        role_type: str,
        *,
        section_id: Optional[int] = None,
        hidden: bool = False,
    ) -> int:
        if role_type not in ROLE_TYPES:
            raise ValueError(f"Unknown role type '{role_type}'")
        return self._insert(
            "add_role",
            "roles",
            {
                "user_id": user_id,
                "course_id": course_id,
                "type": role_type,
                "section_id": section_id,
                "hidden": hidden,
            },
        )

    def get_role(self, user_id: int, course_id: int) -> Optional[RoleRecord]:
        row = self._fetch_one(
            "get_role",
            "SELECT * FROM roles WHERE user_id = ? AND course_id = ?",
            (user_id, course_id),
        )
        if row is None:
            return None
        data = dict(row)
        data["hidden"] = bool(data["hidden"])
        return RoleRecord(**data)

    def iter_students(self, course_id: int) -> List[StudentRecord]:
        rows = self._fetch_all(
            "iter_students",
            """
            SELECT u.user_name, u.last_name, u.first_name, s.name AS section_name,
                   u.id_number, u.email
            FROM roles r
            JOIN users u ON u.id = r.user_id
            LEFT JOIN sections s ON s.id = r.section_id
            WHERE r.course_id = ? AND r.type = ?
            ORDER BY u.user_name
            """,
            (course_id, STUDENT),
        )
        return [StudentRecord(**row) for row in rows]

    # ---------------------------------------------------------------------
    # Assignments
    # ---------------------------------------------------------------------
    def get_assignment(self, assignment_id: int) -> Optional[AssignmentRecord]:
        row = self._fetch_one(
            "get_assignment", f"{_ASSIGNMENT_SELECT} WHERE a.id = ?", (assignment_id,)
        )
        return _assignment_from_row(row) if row else None

    def find_assignment(self, course_id: int, short_identifier: str) -> Optional[AssignmentRecord]:
        row = self._fetch_one(
            "find_assignment",
            f"{_ASSIGNMENT_SELECT} WHERE a.course_id = ? AND a.short_identifier = ?",
            (course_id, short_identifier),
        )
        return _assignment_from_row(row) if row else None

    def iter_assignments(self, course_id: int) -> List[AssignmentRecord]:
        rows = self._fetch_all(
            "iter_assignments",
            f"{_ASSIGNMENT_SELECT} WHERE a.course_id = ? ORDER BY a.id",
            (course_id,),
        )
        return [_assignment_from_row(row) for row in rows]

    def save_assignments(self, course_id: int, changes: Sequence[AssignmentChange]) -> List[int]:
        """Insert or update several assignments in a single transaction.

        Each change is ``(assignment_id, fields)``; a ``None`` id inserts a new
        assignment. Either every change is written or none is.
        """

        saved: List[int] = []
        with self._transaction(
            "save_assignments", course_id=course_id, change_count=len(changes)
        ) as connection:
            for assignment_id, fields in changes:
                unknown = set(fields) - set(ASSIGNMENT_COLUMNS) - set(PROPERTY_COLUMNS)
                if unknown:
                    raise ValueError(f"Unknown assignment fields: {', '.join(sorted(unknown))}")
                main = {key: value for key, value in fields.items() if key in ASSIGNMENT_COLUMNS}
                properties = {
                    key: value for key, value in fields.items() if key in PROPERTY_COLUMNS
                }
                if assignment_id is None:
                    main_values = {"course_id": course_id, **main}
                    cursor = self._execute(
                        connection,
                        f"INSERT INTO assignments({', '.join(main_values)}) "
                        f"VALUES ({', '.join('?' for _ in main_values)})",
                        [_to_db_value(value) for value in main_values.values()],
                    )
                    assignment_id = int(cursor.lastrowid)
                    property_values = {"assignment_id": assignment_id, **properties}
                    self._execute(
                        connection,
                        f"INSERT INTO assignment_properties({', '.join(property_values)}) "
                        f"VALUES ({', '.join('?' for _ in property_values)})",
                        [_to_db_value(value) for value in property_values.values()],
                    )
                else:
                    if main:
                        statement, parameters = self._update_statement("assignments", "id", main)
                        self._execute(connection, statement, [*parameters, assignment_id])
                    if properties:
                        statement, parameters = self._update_statement(
                            "assignment_properties", "assignment_id", properties
                        )
                        self._execute(connection, statement, [*parameters, assignment_id])
                saved.append(assignment_id)
        LOGGER.debug("Saved %s assignment(s) for course_id=%s", len(saved), course_id)
        return saved

    def remove_assignment(self, assignment_id: int) -> None:
        with self._transaction("remove_assignment", assignment_id=assignment_id) as connection:
            self._execute(connection, "DELETE FROM assignments WHERE id = ?", (assignment_id,))

    def reset_remote_autotest_settings(self, course_id: int) -> int:
        with self._transaction("reset_remote_autotest_settings", course_id=course_id) as connection:
            cursor = self._execute(
                connection,
                """
                UPDATE assignment_properties SET remote_autotest_settings_id = NULL
                WHERE assignment_id IN (SELECT id FROM assignments WHERE course_id = ?)
                """,
                (course_id,),
            )
            return max(cursor.rowcount, 0)

    # ---------------------------------------------------------------------
    # Assignment files
    # ---------------------------------------------------------------------
    def add_assignment_file(self, assignment_id: int, filename: str) -> int:
        with self._transaction("add_assignment_file", assignment_id=assignment_id) as connection:
            return self._assignment_file_id(connection, assignment_id, filename)

    def _assignment_file_id(
        self, connection: sqlite3.Connection, assignment_id: int, filename: str
    ) -> int:
        row = self._execute(
            connection,
            "SELECT id FROM assignment_files WHERE assignment_id = ? AND filename = ?",
            (assignment_id, filename),
        ).fetchone()
        if row is not None:
            return int(row["id"])
        cursor = self._execute(
            connection,
            "INSERT INTO assignment_files(assignment_id, filename) VALUES (?, ?)",
            (assignment_id, filename),
        )
        return int(cursor.lastrowid)

    def iter_assignment_files(self, assignment_id: int) -> List[AssignmentFileRecord]:
        rows = self._fetch_all(
            "iter_assignment_files",
            "SELECT * FROM assignment_files WHERE assignment_id = ? ORDER BY filename",
            (assignment_id,),
        )
        return [AssignmentFileRecord(**row) for row in rows]

    # ---------------------------------------------------------------------
    # Autotest settings
    # ---------------------------------------------------------------------
    def add_autotest_setting(self, url: str, api_key: str, schema: str = "{}") -> int:
        return self._insert(
            "add_autotest_setting",
            "autotest_settings",
            {"url": url, "api_key": api_key, "schema": schema},
        )

    def get_autotest_setting(self, setting_id: int) -> Optional[AutotestSettingRecord]:
        row = self._fetch_one(
            "get_autotest_setting", "SELECT * FROM autotest_settings WHERE id = ?", (setting_id,)
        )
        return AutotestSettingRecord(**row) if row else None

    def find_autotest_setting(self, url: str) -> Optional[AutotestSettingRecord]:
        row = self._fetch_one(
            "find_autotest_setting", "SELECT * FROM autotest_settings WHERE url = ?", (url,)
        )
        return AutotestSettingRecord(**row) if row else None

    # ---------------------------------------------------------------------
    # LTI
    # ---------------------------------------------------------------------
    def upsert_lti_client(self, client_id: str, host: str) -> int:
        with self._transaction("upsert_lti_client", client_id=client_id, host=host) as connection:
            row = self._execute(
                connection,
                "SELECT id FROM lti_clients WHERE client_id = ? AND host = ?",
                (client_id, host),
            ).fetchone()
            if row is not None:
                return int(row["id"])
            cursor = self._execute(
                connection,
                "INSERT INTO lti_clients(client_id, host) VALUES (?, ?)",
                (client_id, host),
            )
            return int(cursor.lastrowid)

    def get_lti_client(self, lti_client_id: int) -> Optional[LtiClientRecord]:
        row = self._fetch_one(
            "get_lti_client", "SELECT * FROM lti_clients WHERE id = ?", (lti_client_id,)
        )
        return LtiClientRecord(**row) if row else None

    def upsert_lti_deployment(
        self,
        lti_client_id: int,
        external_deployment_id: str,
        *,
        lms_course_name: Optional[str] = None,
        lms_course_id: Optional[str] = None,
    ) -> int:
        with self._transaction(
            "upsert_lti_deployment",
            lti_client_id=lti_client_id,
            external_deployment_id=external_deployment_id,
        ) as connection:
            row = self._execute(
                connection,
                "SELECT id FROM lti_deployments WHERE lti_client_id = ? AND external_deployment_id = ?",
                (lti_client_id, external_deployment_id),
            ).fetchone()
            if row is not None:
                self._execute(
                    connection,
                    "UPDATE lti_deployments SET lms_course_name = ?, lms_course_id = ? WHERE id = ?",
                    (lms_course_name, lms_course_id, row["id"]),
                )
                return int(row["id"])
            cursor = self._execute(
                connection,
                """
                INSERT INTO lti_deployments(
                    lti_client_id, external_deployment_id, lms_course_name, lms_course_id
                ) VALUES (?, ?, ?, ?)
                """,
                (lti_client_id, external_deployment_id, lms_course_name, lms_course_id),
            )
            return int(cursor.lastrowid)

    def get_lti_deployment(self, deployment_id: int) -> Optional[LtiDeploymentRecord]:
        row = self._fetch_one(
            "get_lti_deployment", "SELECT * FROM lti_deployments WHERE id = ?", (deployment_id,)
        )
        return LtiDeploymentRecord(**row) if row else None

    def link_lti_deployment(self, deployment_id: int, course_id: int) -> None:
        with self._transaction(
            "link_lti_deployment", deployment_id=deployment_id, course_id=course_id
        ) as connection:
            self._execute(
                connection,
                "UPDATE lti_deployments SET course_id = ? WHERE id = ?",
                (course_id, deployment_id),
            )

    # ---------------------------------------------------------------------
    # Exam templates
    # ---------------------------------------------------------------------
    def add_exam_template(
        self, assignment_id: int, name: str, filename: str, num_pages: int
    ) -> int:
        return self._insert(
            "add_exam_template",
            "exam_templates",
            {
                "assignment_id": assignment_id,
                "name": name,
                "filename": filename,
                "num_pages": num_pages,
            },
        )

    def get_exam_template(self, template_id: int) -> Optional[ExamTemplateRecord]:
        row = self._fetch_one(
            "get_exam_template", "SELECT * FROM exam_templates WHERE id = ?", (template_id,)
        )
        return _template_from_row(row) if row else None

    def iter_exam_templates(self, assignment_id: int) -> List[ExamTemplateRecord]:
        rows = self._fetch_all(
            "iter_exam_templates",
            "SELECT * FROM exam_templates WHERE assignment_id = ? ORDER BY id",
            (assignment_id,),
        )
        return [_template_from_row(row) for row in rows]

    def update_exam_template(self, template_id: int, **fields: Any) -> None:
        unknown = set(fields) - set(EXAM_TEMPLATE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown exam template fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        statement, parameters = self._update_statement("exam_templates", "id", fields)
        with self._transaction("update_exam_template", template_id=template_id) as connection:
            self._execute(connection, statement, [*parameters, template_id])

    def remove_exam_template(self, template_id: int) -> int:
        """Delete a template and the division files no other template uses.

        Returns the number of assignment files removed.
        """

        with self._transaction("remove_exam_template", template_id=template_id) as connection:
            previous = self._division_file_ids(connection, template_id)
            self._execute(connection, "DELETE FROM exam_templates WHERE id = ?", (template_id,))
            return self._remove_unreferenced_files(connection, previous)

    def iter_template_divisions(self, template_id: int) -> List[TemplateDivisionRecord]:
        rows = self._fetch_all(
            "iter_template_divisions",
            "SELECT * FROM template_divisions WHERE exam_template_id = ? ORDER BY start_page, id",
            (template_id,),
        )
        return [TemplateDivisionRecord(**row) for row in rows]

    def replace_template_divisions(
        self, template_id: int, divisions: Sequence[Mapping[str, Any]]
    ) -> int:
        """Replace a template's divisions in a single transaction.

        A division carrying a ``filename`` is linked to that required file of
        the template's assignment, which is created when missing. Files the old
        divisions used and no division of any template still references are
        removed; the number removed is returned.
        """

        with self._transaction(
            "replace_template_divisions", template_id=template_id, division_count=len(divisions)
        ) as connection:
            row = self._execute(
                connection,
                "SELECT assignment_id FROM exam_templates WHERE id = ?",
                (template_id,),
            ).fetchone()
            if row is None:
                raise LookupError(f"Exam template {template_id} does not exist")
            previous = self._division_file_ids(connection, template_id)
            self._execute(
                connection,
                "DELETE FROM template_divisions WHERE exam_template_id = ?",
                (template_id,),
            )
            for division in divisions:
                filename = division.get("filename")
                file_id = (
                    self._assignment_file_id(connection, int(row["assignment_id"]), filename)
                    if filename
                    else None
                )
                self._execute(
                    connection,
                    """
                    INSERT INTO template_divisions(
                        exam_template_id, label, start_page, end_page, assignment_file_id
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        template_id,
                        division["label"],
                        division["start_page"],
                        division["end_page"],
                        file_id,
                    ),
                )
            return self._remove_unreferenced_files(connection, previous)

    def _division_file_ids(self, connection: sqlite3.Connection, template_id: int) -> List[int]:
        rows = self._execute(
            connection,
            """
            SELECT DISTINCT assignment_file_id FROM template_divisions
            WHERE exam_template_id = ? AND assignment_file_id IS NOT NULL
            """,
            (template_id,),
        ).fetchall()
        return [int(row["assignment_file_id"]) for row in rows]

    def _remove_unreferenced_files(
        self, connection: sqlite3.Connection, file_ids: Sequence[int]
    ) -> int:
        removed = 0
        for file_id in file_ids:
            cursor = self._execute(
                connection,
                """
                DELETE FROM assignment_files WHERE id = ? AND NOT EXISTS (
                    SELECT 1 FROM template_divisions WHERE assignment_file_id = ?
                )
                """,
                (file_id, file_id),
            )
            removed += max(cursor.rowcount, 0)
        return removed


__all__ = [
    "ADMIN_ROLE",
    "ADMIN_USER",
    "ASSIGNMENT_COLUMNS",
    "ASSIGNMENT_FIELD_TYPES",
    "AssignmentChange",
    "AssignmentFileRecord",
    "AssignmentRecord",
    "AutotestSettingRecord",
    "CourseRecord",
    "CourseRepository",
    "END_USER",
    "ExamTemplateRecord",
    "INSTRUCTOR",
    "LtiClientRecord",
    "LtiDeploymentRecord",
    "PROPERTY_COLUMNS",
    "ROLE_TYPES",
    "RoleRecord",
    "STUDENT",
    "SectionRecord",
    "StudentRecord",
    "TA",
    "TemplateDivisionRecord",
    "UserRecord",
    "from_db_datetime",
    "to_db_datetime",
]
