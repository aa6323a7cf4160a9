from __future__ import annotations

import csv
import io
from datetime import datetime, timezone

import pytest
import yaml

from course_manager.services.assignment_lists import (
    DEFAULT_FIELDS,
    AssignmentListError,
    AssignmentListService,
)
from course_manager.services.storage import CourseRepository


@pytest.fixture()
def course_id(repository: CourseRepository) -> int:
    return repository.add_course("csc108", "Intro to CS")


@pytest.fixture()
def service(repository: CourseRepository) -> AssignmentListService:
    return AssignmentListService(repository)


def _save(repository: CourseRepository, course_id: int, short_identifier: str, **fields) -> int:
    values = {
        "short_identifier": short_identifier,
        "description": f"Assignment {short_identifier}",
        "due_date": datetime(2024, 2, 1, 17, 0, tzinfo=timezone.utc),
        "repository_folder": short_identifier,
    }
    values.update(fields)
    (assignment_id,) = repository.save_assignments(course_id, [(None, values)])
    return assignment_id


def test_csv_upload_creates_new_assignments_with_defaults(
    service: AssignmentListService, repository: CourseRepository, course_id: int
) -> None:
    data = (
        "A1,First assignment,2024-03-01 23:59:00 -0500,Read the handout,1,2\n"
        "A2,Second assignment,2024-03-15T12:00:00+00:00\n"
    )

    result = service.upload_assignment_list(course_id, "csv", data)

    assert result == {"invalid_lines": "", "valid_lines": "2 objects successfully uploaded."}
    first = repository.find_assignment(course_id, "A1")
    assert first is not None
    assert first.description == "First assignment"
    assert first.message == "Read the handout"
    assert first.group_max == 2
    assert first.repository_folder == "A1"
    assert first.token_period == 1
    assert first.unlimited_tokens is False
    assert first.due_date == datetime(2024, 3, 2, 4, 59, tzinfo=timezone.utc)


def test_csv_upload_updates_existing_assignment_without_blanking(
    service: AssignmentListService, repository: CourseRepository, course_id: int
) -> None:
    _save(repository, course_id, "A1", message="keep me", group_max=3)

    result = service.upload_assignment_list(course_id, "csv", "A1,Renamed,,,,\n")

    assert result["valid_lines"] == "1 objects successfully uploaded."
    updated = repository.find_assignment(course_id, "A1")
    assert updated is not None
    assert updated.description == "Renamed"
    assert updated.message == "keep me"
    assert updated.group_max == 3
    assert len(repository.iter_assignments(course_id)) == 1


def test_csv_upload_reports_invalid_rows(
    service: AssignmentListService, repository: CourseRepository, course_id: int
) -> None:
    data = (
        "A1,Good one,2024-03-01 12:00\n"
        "bad id,Broken,2024-03-01 12:00\n"
        "A3,Also broken,not a date\n"
    )

    result = service.upload_assignment_list(course_id, "csv", data)

    assert result["invalid_lines"] == (
        "The following CSV rows were invalid: "
        "bad id,Broken,2024-03-01 12:00 - A3,Also broken,not a date"
    )
    assert result["valid_lines"] == "1 objects successfully uploaded."
    assert [a.short_identifier for a in repository.iter_assignments(course_id)] == ["A1"]


def test_csv_upload_of_empty_file_changes_nothing(
    service: AssignmentListService, repository: CourseRepository, course_id: int
) -> None:
    assert service.upload_assignment_list(course_id, "csv", "") == {
        "invalid_lines": "",
        "valid_lines": "",
    }
    assert repository.iter_assignments(course_id) == []


def test_csv_download_writes_default_fields_in_order(
    service: AssignmentListService, repository: CourseRepository, course_id: int
) -> None:
    _save(repository, course_id, "A1", allow_remarks=True)
    _save(repository, course_id, "A2")

    rows = list(csv.reader(io.StringIO(service.get_assignment_list(course_id, "csv"))))

    assert [row[0] for row in rows] == ["A1", "A2"]
    first = dict(zip(DEFAULT_FIELDS, rows[0]))
    assert len(rows[0]) == len(DEFAULT_FIELDS)
    assert first["due_date"] == "2024-02-01T17:00:00+00:00"
    assert first["allow_remarks"] == "true"
    assert first["remark_due_date"] == ""
    assert first["group_min"] == "1"


def test_yml_round_trip_through_download_and_upload(
    service: AssignmentListService, repository: CourseRepository, course_id: int
) -> None:
    _save(repository, course_id, "A1", description="Original")
    document = yaml.safe_load(service.get_assignment_list(course_id, "yml"))

    assert list(document) == ["assignments"]
    assert list(document["assignments"][0]) == list(DEFAULT_FIELDS)

    document["assignments"][0]["description"] = "Edited"
    document["assignments"].append(
        {"short_identifier": "A2", "description": "New", "due_date": "2024-04-01 09:00"}
    )
    result = service.upload_assignment_list(course_id, "yml", yaml.safe_dump(document))

    assert result == {"invalid_lines": "", "valid_lines": "2 objects successfully uploaded."}
    assert repository.find_assignment(course_id, "A1").description == "Edited"
    created = repository.find_assignment(course_id, "A2")
    assert created is not None
    assert created.display_median_to_students is False
    assert created.display_grader_names_to_students is False
    assert created.repository_folder == "A2"


def test_yml_upload_is_all_or_nothing(
    service: AssignmentListService, repository: CourseRepository, course_id: int
) -> None:
    document = {
        "assignments": [
            {"short_identifier": "A1", "description": "Fine", "due_date": "2024-04-01"},
            {"short_identifier": "A2", "description": "Bad", "due_date": "2024-04-01",
             "group_min": 0},
        ]
    }

    with pytest.raises(AssignmentListError):
        service.upload_assignment_list(course_id, "yml", yaml.safe_dump(document))

    assert repository.iter_assignments(course_id) == []


@pytest.mark.parametrize(
    "payload",
    [
        "- just a list\n",
        "assignments:\n  - short_identifier: A1\n    colour: blue\n",
        "assignments:\n  - short_identifier: A1\n  - short_identifier: A1\n",
        "assignments: [unclosed\n",
    ],
)
def test_yml_upload_rejects_malformed_documents(
    service: AssignmentListService, course_id: int, payload: str
) -> None:
    with pytest.raises(AssignmentListError):
        service.upload_assignment_list(course_id, "yml", payload)


def test_unknown_format_is_rejected(service: AssignmentListService, course_id: int) -> None:
    with pytest.raises(AssignmentListError):
        service.get_assignment_list(course_id, "xlsx")
    with pytest.raises(AssignmentListError):
        service.upload_assignment_list(course_id, "json", "{}")


@pytest.mark.parametrize(
    "field, value",
    [("group_min", [1]), ("group_max", {"max": 3}), ("tokens_per_period", [2]), ("token_period", [1.5])],
)
def test_yml_upload_rejects_non_scalar_values(
    service: AssignmentListService,
    repository: CourseRepository,
    course_id: int,
    field: str,
    value,
) -> None:
    document = {
        "assignments": [
            {"short_identifier": "A1", "description": "Fine", "due_date": "2024-04-01"},
            {"short_identifier": "A2", "description": "Shaped", "due_date": "2024-04-01", field: value},
        ]
    }

    with pytest.raises(AssignmentListError, match="A2"):
        service.upload_assignment_list(course_id, "yml", yaml.safe_dump(document))

    assert repository.iter_assignments(course_id) == []
