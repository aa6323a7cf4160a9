"""Bulk CSV/YAML download and upload of a course's assignment list."""

from __future__ import annotations

import csv
import io
import logging
import sqlite3
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from .events import log_app_event
from .storage import AssignmentRecord, CourseRepository
from .validation import ValidationError, coerce_field, validate_assignment


LOGGER = logging.getLogger(__name__)


DEFAULT_FIELDS: Tuple[str, ...] = (
    "short_identifier",
    "description",
    "due_date",
    "message",
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
    "is_hidden",
    "vcs_submit",
    "has_peer_review",
)

SUPPORTED_FORMATS = ("csv", "yml")

# Values the schema fills in for a freshly inserted assignment.
_STORED_DEFAULTS: Dict[str, Any] = {
    "group_min": 1,
    "group_max": 1,
    "tokens_per_period": 0,
}


class AssignmentListError(ValueError):
    """Raised when an assignment list cannot be read or applied."""


def _new_assignment_fields(short_identifier: str) -> Dict[str, Any]:
    return {
        "short_identifier": short_identifier,
        "repository_folder": short_identifier,
        "token_period": 1,
        "unlimited_tokens": False,
    }


def _format_csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class AssignmentListService:
    """Read and write a course's assignments as CSV rows or a YAML document."""

    def __init__(self, repository: CourseRepository) -> None:
        self._repository = repository

    def _require_format(self, file_format: str) -> str:
        normalized = (file_format or "").strip().lower()
        if normalized == "yaml":
            normalized = "yml"
        if normalized not in SUPPORTED_FORMATS:
            raise AssignmentListError(f"Unsupported assignment list format '{file_format}'")
        return normalized

    def get_assignment_list(self, course_id: int, file_format: str) -> str:
        file_format = self._require_format(file_format)
        assignments = self._repository.iter_assignments(course_id)

        if file_format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            for assignment in assignments:
                writer.writerow(
                    [_format_csv_value(getattr(assignment, field)) for field in DEFAULT_FIELDS]
                )
            return buffer.getvalue()

        entries = [
            {field: getattr(assignment, field) for field in DEFAULT_FIELDS}
            for assignment in assignments
        ]
        return yaml.safe_dump(
            {"assignments": entries}, sort_keys=False, default_flow_style=False
        )

    def upload_assignment_list(
        self, course_id: int, file_format: str, data: str
    ) -> Dict[str, str]:
        """Apply an uploaded list and return the ``invalid_lines``/``valid_lines`` summary."""

        file_format = self._require_format(file_format)
        if file_format == "csv":
            result = self._upload_csv(course_id, data)
        else:
            result = self._upload_yml(course_id, data)
        log_app_event(
            "Assignment list uploaded",
            course_id=course_id,
            format=file_format,
            valid=result["valid_lines"],
            invalid=result["invalid_lines"],
        )
        return result

    # ------------------------------------------------------------------
    # CSV
    # ------------------------------------------------------------------
    def _upload_csv(self, course_id: int, data: str) -> Dict[str, str]:
        invalid_rows: List[str] = []
        valid_count = 0

        for row in csv.reader(io.StringIO(data or "")):
            if not any(cell.strip() for cell in row):
                continue
            try:
                self._apply_csv_row(course_id, row)
            except (ValueError, sqlite3.IntegrityError) as error:
                LOGGER.debug("Rejected assignment row %s: %s", row, error)
                invalid_rows.append(",".join(row))
            else:
                valid_count += 1

        return {
            "invalid_lines": (
                "The following CSV rows were invalid: " + " - ".join(invalid_rows)
                if invalid_rows
                else ""
            ),
            "valid_lines": (
                f"{valid_count} objects successfully uploaded." if valid_count else ""
            ),
        }

    def _apply_csv_row(self, course_id: int, row: Sequence[str]) -> None:
        short_identifier = row[0].strip()
        if not short_identifier:
            raise ValidationError({"short_identifier": ["can't be blank"]})

        changes: Dict[str, Any] = {}
        for field, cell in zip(DEFAULT_FIELDS, row):
            if cell.strip() == "":
                continue
            changes[field] = coerce_field(field, cell.strip() if field != "message" else cell)

        existing = self._repository.find_assignment(course_id, short_identifier)
        assignment_id, fields = self._prepare(existing, short_identifier, changes)
        self._repository.save_assignments(course_id, [(assignment_id, fields)])

    # ------------------------------------------------------------------
    # YAML
    # ------------------------------------------------------------------
    def _upload_yml(self, course_id: int, data: str) -> Dict[str, str]:
        try:
            document = yaml.safe_load(data or "")
        except yaml.YAMLError as error:
            raise AssignmentListError(f"Could not parse YAML: {error}") from error

        if document is None:
            entries: List[Any] = []
        elif isinstance(document, Mapping) and isinstance(document.get("assignments"), list):
            entries = document["assignments"]
        else:
            raise AssignmentListError("Expected a mapping with an 'assignments' list")

        allowed = set(DEFAULT_FIELDS) | {"course_id"}
        seen: set = set()
        problems: List[str] = []
        changes: List[Tuple[Optional[int], Dict[str, Any]]] = []

        for index, entry in enumerate(entries, start=1):
            if not isinstance(entry, Mapping):
                problems.append(f"entry {index} is not a mapping")
                continue
            unknown = set(entry) - allowed
            if unknown:
                problems.append(f"entry {index} has unknown fields: {', '.join(sorted(map(str, unknown)))}")
                continue
            short_identifier = str(entry.get("short_identifier") or "").strip()
            if not short_identifier:
                problems.append(f"entry {index} is missing short_identifier")
                continue
            if short_identifier in seen:
                problems.append(f"'{short_identifier}' appears more than once")
                continue
            seen.add(short_identifier)

            try:
                values = {
                    field: coerce_field(field, value)
                    for field, value in entry.items()
                    if field in DEFAULT_FIELDS and value is not None
                }
                existing = self._repository.find_assignment(course_id, short_identifier)
                if existing is None:
                    values.setdefault("display_median_to_students", False)
                    values.setdefault("display_grader_names_to_students", False)
                changes.append(self._prepare(existing, short_identifier, values))
            except (TypeError, ValueError) as error:
                problems.append(f"'{short_identifier}': {error}")

        if problems:
            raise AssignmentListError("Invalid assignment list: " + "; ".join(problems))

        try:
            self._repository.save_assignments(course_id, changes)
        except sqlite3.IntegrityError as error:
            raise AssignmentListError(f"Could not save assignments: {error}") from error

        return {
            "invalid_lines": "",
            "valid_lines": f"{len(changes)} objects successfully uploaded." if changes else "",
        }

    # ------------------------------------------------------------------
    def _prepare(
        self,
        existing: Optional[AssignmentRecord],
        short_identifier: str,
        changes: Dict[str, Any],
    ) -> Tuple[Optional[int], Dict[str, Any]]:
        """Validate *changes* against the stored record and return a save entry."""

        if existing is None:
            fields = {**_new_assignment_fields(short_identifier), **changes}
            validate_assignment({**_STORED_DEFAULTS, **fields})
            return None, fields

        validate_assignment({**asdict(existing), **changes})
        return existing.id, changes


__all__ = [
    "AssignmentListError",
    "AssignmentListService",
    "DEFAULT_FIELDS",
    "SUPPORTED_FORMATS",
]
