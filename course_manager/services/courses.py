"""Course level business operations."""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import yaml

from ..config import AppConfig
from .autotest import AutotestClient
from .events import log_app_event
from .jobs import UPDATE_REPO_MAX_FILE_SIZE, JobScheduler
from .storage import (
    ASSIGNMENT_FIELD_TYPES,
    AssignmentRecord,
    AutotestSettingRecord,
    CourseRecord,
    CourseRepository,
)
from .validation import (
    ValidationError,
    coerce_field,
    validate_assignment,
    validate_course,
)


LOGGER = logging.getLogger(__name__)

CURRENT_ASSIGNMENT_WINDOW = timedelta(days=3)
_COURSE_FIELDS = ("name", "display_name", "is_hidden", "max_file_size")


class RecordNotFoundError(LookupError):
    """Raised when a referenced course or assignment does not exist."""


class CourseService:
    """Create, edit and query courses and their assignments."""

    def __init__(
        self,
        repository: CourseRepository,
        config: AppConfig,
        *,
        scheduler: Optional[JobScheduler] = None,
        autotest_client: Optional[AutotestClient] = None,
    ) -> None:
        self._repository = repository
        self._config = config
        self._scheduler = scheduler
        self._autotest = autotest_client or AutotestClient()

    # ------------------------------------------------------------------
    # Courses
    # ------------------------------------------------------------------
    def get_course(self, course_id: int) -> CourseRecord:
        course = self._repository.get_course(course_id)
        if course is None:
            raise RecordNotFoundError(f"Course {course_id} not found")
        return course

    def create_course(
        self,
        name: str,
        display_name: str,
        is_hidden: bool = False,
        max_file_size: Optional[int] = None,
    ) -> CourseRecord:
        if max_file_size is None:
            max_file_size = self._config.default_max_file_size
        fields = {
            "name": name,
            "display_name": display_name,
            "is_hidden": is_hidden,
            "max_file_size": max_file_size,
        }
        validate_course(
            fields,
            name_taken=bool(name) and self._repository.find_course_by_name(name) is not None,
        )
        course_id = self._repository.add_course(
            name, display_name, is_hidden=is_hidden, max_file_size=max_file_size
        )
        log_app_event("Course created", course_id=course_id, name=name)
        self._schedule_max_file_size_update(course_id)
        return self.get_course(course_id)

    def update_course(self, course_id: int, **changes: Any) -> CourseRecord:
        course = self.get_course(course_id)
        unknown = set(changes) - set(_COURSE_FIELDS)
        if unknown:
            raise ValidationError({field: ["is not an editable field"] for field in sorted(unknown)})

        merged = {**asdict(course), **changes}
        name_taken = False
        if merged["name"] != course.name and merged["name"]:
            other = self._repository.find_course_by_name(merged["name"])
            name_taken = other is not None and other.id != course_id
        validate_course(merged, name_taken=name_taken)

        updates = {
            key: value for key, value in changes.items() if getattr(course, key) != value
        }
        if not updates:
            return course
        self._repository.update_course(course_id, **updates)
        log_app_event("Course updated", course_id=course_id, fields=sorted(updates))
        if "max_file_size" in updates:
            self._schedule_max_file_size_update(course_id)
        return self.get_course(course_id)

    def _schedule_max_file_size_update(self, course_id: int) -> None:
        if not self._config.uses_git_repositories:
            LOGGER.debug("Skipping repository size update for non-git repositories")
            return
        if self._scheduler is None:
            LOGGER.warning("No job scheduler configured; repository sizes not updated")
            return
        self._scheduler.schedule(UPDATE_REPO_MAX_FILE_SIZE, course_id)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------
    def get_assignment(self, assignment_id: int) -> AssignmentRecord:
        assignment = self._repository.get_assignment(assignment_id)
        if assignment is None:
            raise RecordNotFoundError(f"Assignment {assignment_id} not found")
        return assignment

    def _coerce(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        problems: Dict[str, List[str]] = {}
        for field, value in fields.items():
            if field not in ASSIGNMENT_FIELD_TYPES:
                problems.setdefault(field, []).append("is not an assignment field")
                continue
            try:
                values[field] = coerce_field(field, value)
            except (TypeError, ValueError) as error:
                problems.setdefault(field, []).append(str(error))
        if problems:
            raise ValidationError(problems)
        return values

    def create_assignment(self, course_id: int, fields: Mapping[str, Any]) -> AssignmentRecord:
        self.get_course(course_id)
        values = self._coerce(fields)
        short_identifier = values.get("short_identifier")
        if short_identifier and self._repository.find_assignment(course_id, short_identifier):
            raise ValidationError({"short_identifier": ["has already been taken"]})

        values.setdefault("repository_folder", short_identifier)
        values.setdefault("token_period", 1)
        values.setdefault("unlimited_tokens", False)
        validate_assignment({"group_min": 1, "group_max": 1, "tokens_per_period": 0, **values})
        (assignment_id,) = self._repository.save_assignments(course_id, [(None, values)])
        log_app_event("Assignment created", course_id=course_id, assignment_id=assignment_id)
        return self.get_assignment(assignment_id)

    def update_assignment(self, assignment_id: int, fields: Mapping[str, Any]) -> AssignmentRecord:
        assignment = self.get_assignment(assignment_id)
        values = self._coerce(fields)
        new_identifier = values.get("short_identifier")
        if new_identifier and new_identifier != assignment.short_identifier:
            if self._repository.find_assignment(assignment.course_id, new_identifier):
                raise ValidationError({"short_identifier": ["has already been taken"]})
        validate_assignment({**asdict(assignment), **values})
        self._repository.save_assignments(assignment.course_id, [(assignment_id, values)])
        return self.get_assignment(assignment_id)

    def get_current_assignment(
        self,
        course_id: int,
        now: Optional[datetime] = None,
        *,
        include_hidden: bool = True,
    ) -> Optional[AssignmentRecord]:
        """Return the assignment a course page should focus on.

        Preference order: the earliest assignment due within the next three
        days, then the most recently past-due one, then the earliest upcoming.
        Hidden assignments are skipped unless *include_hidden* is set.
        """

        assignments = self._repository.iter_assignments(course_id)
        if not include_hidden:
            assignments = [a for a in assignments if not a.is_hidden]
        if not assignments:
            return None
        if len(assignments) == 1:
            return assignments[0]

        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        window_end = now + CURRENT_ASSIGNMENT_WINDOW

        due_soon = [a for a in assignments if now < a.due_date <= window_end]
        if due_soon:
            return min(due_soon, key=lambda a: a.due_date)

        past_due = [a for a in assignments if a.due_date <= now]
        if past_due:
            return max(past_due, key=lambda a: a.due_date)

        return min(assignments, key=lambda a: a.due_date)

    def get_required_files(self, course_id: int) -> Dict[str, Dict[str, Any]]:
        required: Dict[str, Dict[str, Any]] = {}
        for assignment in self._repository.iter_assignments(course_id):
            if assignment.is_hidden or assignment.scanned_exam:
                continue
            files = self._repository.iter_assignment_files(assignment.id)
            required[assignment.repository_folder] = {
                "required": [record.filename for record in files],
                "required_only": assignment.only_required_files,
            }
        return required

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------
    def export_student_data_csv(self, course_id: int) -> str:
        students = self._repository.iter_students(course_id)
        if not students:
            return ""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        for student in students:
            writer.writerow(
                [
                    student.user_name,
                    student.last_name,
                    student.first_name,
                    student.section_name or "",
                    student.id_number or "",
                    student.email or "",
                ]
            )
        return buffer.getvalue()

    def export_student_data_yml(self, course_id: int) -> str:
        entries = [
            {
                "user_name": student.user_name,
                "last_name": student.last_name,
                "first_name": student.first_name,
                "email": student.email,
                "id_number": student.id_number,
                "section_name": student.section_name,
            }
            for student in self._repository.iter_students(course_id)
        ]
        return yaml.safe_dump(entries, sort_keys=False, default_flow_style=False)

    # ------------------------------------------------------------------
    # Autotest
    # ------------------------------------------------------------------
    def update_autotest_url(self, course_id: int, url: str) -> AutotestSettingRecord:
        """Point the course at the autotest server at *url*, registering if needed."""

        course = self.get_course(course_id)
        url = (url or "").strip()
        if not url:
            raise ValidationError({"url": ["can't be blank"]})

        setting = self._repository.find_autotest_setting(url)
        if setting is None:
            api_key = self._autotest.register(url)
            schema = self._autotest.get_schema(url, api_key)
            setting_id = self._repository.add_autotest_setting(url, api_key, schema)
            setting = self._repository.get_autotest_setting(setting_id)
            assert setting is not None
            LOGGER.info("Registered autotest server %s", url)

        if course.autotest_setting_id != setting.id:
            self._repository.update_course(course_id, autotest_setting_id=setting.id)
            reset = self._repository.reset_remote_autotest_settings(course_id)
            log_app_event(
                "Autotest server changed",
                course_id=course_id,
                url=url,
                reset_assignments=reset,
            )
        return setting


__all__ = ["CURRENT_ASSIGNMENT_WINDOW", "CourseService", "RecordNotFoundError"]
