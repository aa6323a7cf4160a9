"""Shared helpers for building overview snapshots of stored courses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from ..services.storage import AssignmentRecord, CourseRecord, CourseRepository


FLAG_LABELS: Dict[str, str] = {
    "hidden": "Hidden",
    "scanned_exam": "Scanned exam",
    "exam_templates": "Exam templates",
    "required_files": "Required files",
}


@dataclass
class AssignmentOverview:
    record: AssignmentRecord
    flags: List[str]


@dataclass
class CourseOverview:
    record: CourseRecord
    student_count: int
    assignments: List[AssignmentOverview]


@dataclass
class OverviewSnapshot:
    courses: List[CourseOverview]
    course_count: int
    assignment_count: int
    student_count: int
    flag_totals: Dict[str, int]


def collect_overview(repository: CourseRepository) -> OverviewSnapshot:
    """Aggregate repository data into a convenient snapshot for UIs."""

    courses: List[CourseOverview] = []
    assignment_count = 0
    student_count = 0
    flag_totals = {key: 0 for key in FLAG_LABELS}

    for course_record in repository.iter_courses():
        assignments: List[AssignmentOverview] = []
        for assignment_record in repository.iter_assignments(course_record.id):
            assignment_count += 1
            flags = _extract_flags(repository, assignment_record, flag_totals)
            assignments.append(AssignmentOverview(record=assignment_record, flags=flags))

        students = len(repository.iter_students(course_record.id))
        student_count += students
        courses.append(
            CourseOverview(record=course_record, student_count=students, assignments=assignments)
        )

    return OverviewSnapshot(
        courses=courses,
        course_count=len(courses),
        assignment_count=assignment_count,
        student_count=student_count,
        flag_totals=flag_totals,
    )


def _extract_flags(
    repository: CourseRepository,
    assignment: AssignmentRecord,
    flag_totals: Dict[str, int],
) -> List[str]:
    flags: List[str] = []

    if assignment.is_hidden:
        flags.append(FLAG_LABELS["hidden"])
        flag_totals["hidden"] += 1
    if assignment.scanned_exam:
        flags.append(FLAG_LABELS["scanned_exam"])
        flag_totals["scanned_exam"] += 1
        templates = repository.iter_exam_templates(assignment.id)
        if templates:
            flags.append(f"{len(templates)} template(s)")
            flag_totals["exam_templates"] += len(templates)
    elif repository.iter_assignment_files(assignment.id):
        flags.append(FLAG_LABELS["required_files"])
        flag_totals["required_files"] += 1

    return flags


__all__ = [
    "AssignmentOverview",
    "CourseOverview",
    "FLAG_LABELS",
    "OverviewSnapshot",
    "collect_overview",
]
