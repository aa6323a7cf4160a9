from __future__ import annotations

import io
from datetime import datetime, timezone

from rich.console import Console

from course_manager.services.storage import STUDENT, CourseRepository
from course_manager.ui.console import ConsoleUI
from course_manager.ui.modern import ModernUI
from course_manager.ui.overview import collect_overview


def _populate(repository: CourseRepository) -> None:
    course_id = repository.add_course("csc108", "Intro to CS", is_hidden=False)
    repository.add_course("csc148", "Intro II")
    student = repository.add_user("amy", "Amy", "First")
    repository.add_role(student, course_id, STUDENT)
    due = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    a1, exam = repository.save_assignments(
        course_id,
        [
            (None, {"short_identifier": "A1", "description": "One", "due_date": due,
                    "repository_folder": "A1", "is_hidden": False}),
            (None, {"short_identifier": "Midterm", "description": "Exam", "due_date": due,
                    "repository_folder": "Midterm", "scanned_exam": True}),
        ],
    )
    repository.add_assignment_file(a1, "main.py")
    repository.add_exam_template(exam, "Version A", "a.pdf", 2)


def test_collect_overview_counts(repository: CourseRepository) -> None:
    _populate(repository)

    snapshot = collect_overview(repository)

    assert snapshot.course_count == 2
    assert snapshot.assignment_count == 2
    assert snapshot.student_count == 1
    assert snapshot.flag_totals == {
        "hidden": 1,
        "scanned_exam": 1,
        "exam_templates": 1,
        "required_files": 1,
    }
    first = snapshot.courses[0]
    assert [a.record.short_identifier for a in first.assignments] == ["A1", "Midterm"]
    assert first.assignments[0].flags == ["Required files"]
    assert first.assignments[1].flags == ["Hidden", "Scanned exam", "1 template(s)"]


def test_console_ui_lists_courses(repository: CourseRepository, capsys) -> None:
    _populate(repository)

    ConsoleUI(repository).run()

    output = capsys.readouterr().out
    assert "Course: csc108 (Intro to CS)" in output
    assert "  Students: 1" in output
    assert "  Assignment: Midterm (hidden, scanned exam, 1 template(s))" in output
    assert "Course: csc148 (Intro II)" in output


def test_modern_ui_renders_tree_and_totals(repository: CourseRepository) -> None:
    _populate(repository)
    buffer = io.StringIO()

    ModernUI(repository, console=Console(file=buffer, width=160, color_system=None)).run()

    output = buffer.getvalue()
    assert "Course Manager Overview" in output
    assert "csc108" in output and "Midterm" in output
    assert "At a glance" in output


def test_modern_ui_without_courses(repository: CourseRepository) -> None:
    buffer = io.StringIO()

    ModernUI(repository, console=Console(file=buffer, width=120, color_system=None)).run()

    assert "No courses have been created yet." in buffer.getvalue()
