"""Plain text overview for terminals without Rich styling."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ..services.storage import CourseRepository
from .overview import CourseOverview, collect_overview


@dataclass
class ConsoleSection:
    title: str
    entries: Iterable[str]


class ConsoleUI:
    """Minimal console UI that lists courses and their assignments."""

    def __init__(self, repository: CourseRepository) -> None:
        self._repository = repository

    def run(self) -> None:
        print("Course Manager - Console Overview")
        print("=" * 40)
        for section in self._build_sections():
            print(section.title)
            print("-" * len(section.title))
            has_entries = False
            for entry in section.entries:
                has_entries = True
                print(entry)
            if not has_entries:
                print("(empty)")
            print()

    def _build_sections(self) -> Iterable[ConsoleSection]:
        for course in collect_overview(self._repository).courses:
            yield ConsoleSection(
                title=f"Course: {course.record.name} ({course.record.display_name})",
                entries=self._format_assignments(course),
            )

    @staticmethod
    def _format_assignments(course: CourseOverview) -> Iterable[str]:
        yield f"  Students: {course.student_count}"
        for assignment in course.assignments:
            line = f"  Assignment: {assignment.record.short_identifier}"
            if assignment.flags:
                line += " (" + ", ".join(assignment.flags).lower() + ")"
            yield line


__all__ = ["ConsoleUI"]
