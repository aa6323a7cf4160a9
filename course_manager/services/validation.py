"""Field validation and coercion for courses, assignments and exam templates."""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .storage import ASSIGNMENT_FIELD_TYPES


NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

_TRUE_VALUES = {"true", "t", "yes", "y", "1"}
_FALSE_VALUES = {"false", "f", "no", "n", "0"}
_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S %z",
    "%Y-%m-%d %H:%M %z",
    "%Y-%m-%d %H:%M:%S %Z",
    "%Y-%m-%d",
)


class ValidationError(ValueError):
    """Raised when one or more fields are invalid.

    ``errors`` maps each offending field to its messages.
    """

    def __init__(self, errors: Mapping[str, Sequence[str]]) -> None:
        self.errors: Dict[str, List[str]] = {key: list(value) for key, value in errors.items()}
        rendered = "; ".join(
            f"{field} {message}" for field, messages in self.errors.items() for message in messages
        )
        super().__init__(rendered or "Invalid record")


class _Errors:
    def __init__(self) -> None:
        self._errors: Dict[str, List[str]] = {}

    def add(self, field: str, message: str) -> None:
        self._errors.setdefault(field, []).append(message)

    def raise_if_any(self) -> None:
        if self._errors:
            raise ValidationError(self._errors)


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"'{value}' is not a boolean")


def parse_datetime(value: Any) -> datetime:
    """Return an aware datetime for *value*; naive values are taken as UTC."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        parsed = None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            for pattern in _DATETIME_FORMATS:
                try:
                    parsed = datetime.strptime(text, pattern)
                    break
                except ValueError:
                    continue
        if parsed is None:
            raise ValueError(f"'{value}' is not a valid date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def coerce_field(name: str, value: Any) -> Any:
    """Convert *value* into the storage type of the assignment field *name*."""

    kind = ASSIGNMENT_FIELD_TYPES.get(name)
    if kind is None:
        raise ValueError(f"Unknown assignment field '{name}'")
    if value is None:
        return None
    if isinstance(value, (Mapping, list, tuple, set)):
        raise ValueError(f"{name} must be a single value")
    if kind is bool:
        return parse_bool(value)
    if kind is datetime:
        return parse_datetime(value)
    if kind is int:
        if isinstance(value, bool):
            raise ValueError(f"'{value}' is not an integer")
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"'{value}' is not an integer")
        try:
            return int(str(value).strip()) if isinstance(value, str) else int(value)
        except TypeError as error:
            raise ValueError(f"'{value}' is not an integer") from error
    if kind is float:
        try:
            return float(value)
        except TypeError as error:
            raise ValueError(f"'{value}' is not a number") from error
    return str(value)


def validate_course(
    fields: Mapping[str, Any],
    *,
    name_taken: bool = False,
) -> None:
    errors = _Errors()
    name = fields.get("name")
    if not name:
        errors.add("name", "can't be blank")
    elif not NAME_PATTERN.match(str(name)):
        errors.add("name", "may only contain letters, numbers, '_' and '-'")
    elif name_taken:
        errors.add("name", "has already been taken")

    if not str(fields.get("display_name") or "").strip():
        errors.add("display_name", "can't be blank")

    if not isinstance(fields.get("is_hidden"), bool):
        errors.add("is_hidden", "must be true or false")

    max_file_size = fields.get("max_file_size")
    if isinstance(max_file_size, bool) or not isinstance(max_file_size, int):
        errors.add("max_file_size", "must be an integer")
    elif max_file_size < 0:
        errors.add("max_file_size", "must be greater than or equal to 0")
    errors.raise_if_any()


def validate_assignment(fields: Mapping[str, Any]) -> None:
    """Validate the merged (stored plus changed) fields of one assignment."""

    errors = _Errors()
    short_identifier = fields.get("short_identifier")
    if not short_identifier:
        errors.add("short_identifier", "can't be blank")
    elif not NAME_PATTERN.match(str(short_identifier)):
        errors.add("short_identifier", "may only contain letters, numbers, '_' and '-'")

    if not fields.get("description"):
        errors.add("description", "can't be blank")
    if fields.get("due_date") is None:
        errors.add("due_date", "can't be blank")

    folder = fields.get("repository_folder")
    if not folder:
        errors.add("repository_folder", "can't be blank")
    elif not NAME_PATTERN.match(str(folder)):
        errors.add("repository_folder", "may only contain letters, numbers, '_' and '-'")

    group_min = fields.get("group_min", 1)
    group_max = fields.get("group_max", 1)
    if group_min is None or group_min < 1:
        errors.add("group_min", "must be greater than 0")
    elif group_max is None or group_max < group_min:
        errors.add("group_max", "must be greater than or equal to group_min")

    tokens = fields.get("tokens_per_period", 0)
    if tokens is None or tokens < 0:
        errors.add("tokens_per_period", "must be greater than or equal to 0")
    errors.raise_if_any()


def validate_crop_box(values: Optional[Sequence[Optional[float]]]) -> None:
    if values is None:
        return
    errors = _Errors()
    if len(values) != 4:
        errors.add("crop", "needs x, y, width and height")
        errors.raise_if_any()
    provided = [value is not None for value in values]
    if any(provided) and not all(provided):
        errors.add("crop", "needs x, y, width and height")
        errors.raise_if_any()
    if not any(provided):
        return
    x, y, width, height = (float(value) for value in values)  # type: ignore[arg-type]
    for label, value in (("x", x), ("y", y), ("width", width), ("height", height)):
        if not 0.0 <= value <= 1.0:
            errors.add("crop", f"{label} must be between 0 and 1")
    if x + width > 1.0 + 1e-9:
        errors.add("crop", "extends past the right edge of the page")
    if y + height > 1.0 + 1e-9:
        errors.add("crop", "extends past the bottom of the page")
    errors.raise_if_any()


def validate_exam_template(
    name: Optional[str],
    num_pages: int,
    divisions: Iterable[Mapping[str, Any]] = (),
) -> None:
    errors = _Errors()
    if not (name or "").strip():
        errors.add("name", "can't be blank")

    seen: set = set()
    for division in divisions:
        label = str(division.get("label") or "").strip()
        if not label:
            errors.add("divisions", "label can't be blank")
            continue
        if label in seen:
            errors.add("divisions", f"label '{label}' is used more than once")
        seen.add(label)
        try:
            start = int(division.get("start_page"))  # type: ignore[arg-type]
            end = int(division.get("end_page"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            errors.add("divisions", f"'{label}' needs numeric start and end pages")
            continue
        if not 1 <= start <= end <= num_pages:
            errors.add(
                "divisions",
                f"'{label}' pages must satisfy 1 <= start <= end <= {num_pages}",
            )
    errors.raise_if_any()


__all__ = [
    "NAME_PATTERN",
    "ValidationError",
    "coerce_field",
    "parse_bool",
    "parse_datetime",
    "validate_assignment",
    "validate_course",
    "validate_crop_box",
    "validate_exam_template",
]
