"""Scanned exam templates: stored PDFs, page divisions and cover crop boxes."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..config import AppConfig
from ..processing import PdfProcessingError, crop_png, get_pdf_page_count, render_pdf_page
from .courses import RecordNotFoundError
from .events import emit_file_event, log_app_event
from .naming import build_timestamped_name, slugify
from .storage import (
    AssignmentRecord,
    CourseRepository,
    ExamTemplateRecord,
    TemplateDivisionRecord,
)
from .validation import ValidationError, validate_crop_box, validate_exam_template


LOGGER = logging.getLogger(__name__)


class ExamTemplateError(ValueError):
    """Raised when an uploaded template cannot be used."""


class ExamTemplateService:
    def __init__(self, repository: CourseRepository, config: AppConfig) -> None:
        self._repository = repository
        self._config = config

    # ------------------------------------------------------------------
    def _assignment(self, assignment_id: int) -> AssignmentRecord:
        assignment = self._repository.get_assignment(assignment_id)
        if assignment is None:
            raise RecordNotFoundError(f"Assignment {assignment_id} not found")
        return assignment

    def get(self, template_id: int) -> ExamTemplateRecord:
        template = self._repository.get_exam_template(template_id)
        if template is None:
            raise RecordNotFoundError(f"Exam template {template_id} not found")
        return template

    def list(self, assignment_id: int) -> List[ExamTemplateRecord]:
        self._assignment(assignment_id)
        return self._repository.iter_exam_templates(assignment_id)

    def divisions(self, template_id: int) -> List[TemplateDivisionRecord]:
        return self._repository.iter_template_divisions(template_id)

    def template_directory(self, assignment: AssignmentRecord) -> Path:
        course = self._repository.get_course(assignment.course_id)
        course_name = course.name if course is not None else str(assignment.course_id)
        return self._config.exam_templates_root / course_name / assignment.short_identifier

    def template_path(self, template: ExamTemplateRecord) -> Path:
        return self.template_directory(self._assignment(template.assignment_id)) / template.filename

    # ------------------------------------------------------------------
    def create(self, assignment_id: int, name: str, pdf_bytes: bytes) -> ExamTemplateRecord:
        """Store *pdf_bytes* as a new template for the assignment."""

        assignment = self._assignment(assignment_id)
        name = (name or "").strip()
        if not pdf_bytes:
            raise ExamTemplateError("The uploaded template is empty")
        try:
            num_pages = get_pdf_page_count(pdf_bytes)
        except PdfProcessingError as error:
            raise ExamTemplateError(f"The uploaded template is not a readable PDF: {error}") from error

        validate_exam_template(name, num_pages)
        if any(template.name == name for template in self._repository.iter_exam_templates(assignment_id)):
            raise ValidationError({"name": ["has already been taken"]})

        directory = self.template_directory(assignment)
        directory.mkdir(parents=True, exist_ok=True)
        filename = build_timestamped_name(slugify(name), extension=".pdf")
        path = directory / filename
        path.write_bytes(pdf_bytes)
        emit_file_event("Exam template stored", payload={"path": path, "pages": num_pages})

        try:
            template_id = self._repository.add_exam_template(assignment_id, name, filename, num_pages)
        except sqlite3.Error:
            with contextlib.suppress(OSError):
                path.unlink()
            raise
        log_app_event(
            "Exam template created",
            assignment_id=assignment_id,
            template_id=template_id,
            pages=num_pages,
        )
        return self.get(template_id)

    def update(
        self,
        template_id: int,
        *,
        name: Optional[str] = None,
        automatic_parsing: Optional[bool] = None,
        crop: Optional[Sequence[Optional[float]]] = None,
        divisions: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> ExamTemplateRecord:
        template = self.get(template_id)
        new_name = template.name if name is None else name.strip()
        validate_exam_template(new_name, template.num_pages, divisions or ())
        validate_crop_box(crop)

        if new_name != template.name and any(
            other.name == new_name and other.id != template_id
            for other in self._repository.iter_exam_templates(template.assignment_id)
        ):
            raise ValidationError({"name": ["has already been taken"]})

        fields: Dict[str, Any] = {}
        if new_name != template.name:
            fields["name"] = new_name
        if automatic_parsing is not None:
            fields["automatic_parsing"] = bool(automatic_parsing)
        if crop is not None:
            fields.update(
                zip(("cover_x", "cover_y", "cover_width", "cover_height"), crop)
            )
        self._repository.update_exam_template(template_id, **fields)

        if divisions is not None:
            self._replace_divisions(template, divisions)
        return self.get(template_id)

    def _replace_divisions(
        self, template: ExamTemplateRecord, divisions: Sequence[Mapping[str, Any]]
    ) -> None:
        rows = []
        for division in divisions:
            label = str(division["label"]).strip()
            rows.append(
                {
                    "label": label,
                    "start_page": int(division["start_page"]),
                    "end_page": int(division["end_page"]),
                    "filename": f"{label}.pdf",
                }
            )

        removed = self._repository.replace_template_divisions(template.id, rows)
        LOGGER.debug(
            "Template %s now has %s division(s); removed %s assignment file(s)",
            template.id,
            len(rows),
            removed,
        )

    def cover_image(self, template_id: int, *, cropped: bool = False) -> bytes:
        """Render the first page as PNG, optionally cropped to the cover box."""

        template = self.get(template_id)
        path = self.template_path(template)
        if not path.exists():
            raise RecordNotFoundError(f"Template file for {template.name} is missing")
        try:
            image = render_pdf_page(path, 1)
            if cropped and template.crop_box is not None:
                image = crop_png(image, template.crop_box)
        except PdfProcessingError as error:
            raise ExamTemplateError(f"Could not render template cover: {error}") from error
        return image

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        path = self.template_path(template)
        self._repository.remove_exam_template(template_id)
        if path.exists():
            try:
                path.unlink()
            except OSError as error:
                LOGGER.warning("Could not remove template file %s: %s", path, error)
            else:
                emit_file_event("Exam template removed", payload={"path": path})
        log_app_event("Exam template deleted", template_id=template_id)


__all__ = ["ExamTemplateError", "ExamTemplateService"]
