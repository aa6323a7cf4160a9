"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
import yaml
from typer.testing import CliRunner

import run
from course_manager.services.storage import INSTRUCTOR, STUDENT, CourseRepository


def _setup_serve(monkeypatch, tmp_path, upload_limit, *, supports_limit=True):
    captured = {}

    monkeypatch.setattr(
        run,
        "initialize_app",
        lambda: SimpleNamespace(storage_root=tmp_path),
    )
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    monkeypatch.setattr(run, "CourseRepository", lambda config: object())

    dummy_app = SimpleNamespace(state=SimpleNamespace())

    def fake_create_app(repository, config, root_path):
        captured["root_path"] = root_path
        return dummy_app

    monkeypatch.setattr(run, "create_app", fake_create_app)

    if supports_limit:

        class DummyConfig:
            def __init__(self, app, limit_max_request_size=None, **kwargs):
                captured["app"] = app
                if limit_max_request_size is not None:
                    kwargs["limit_max_request_size"] = limit_max_request_size
                captured["config_kwargs"] = kwargs

    else:

        class DummyConfig:  # type: ignore[no-redef]
            def __init__(self, app, host, port, log_config, root_path):
                captured["app"] = app
                captured["config_kwargs"] = {"host": host, "port": port, "root_path": root_path}

    class DummyServer:
        def __init__(self, config):
            captured["server_config"] = config
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)
    monkeypatch.setattr(run, "get_max_upload_bytes", lambda: upload_limit)

    run.serve(host="0.0.0.0", port=9000, root_path="api/")

    captured["app_state_server"] = dummy_app.state.server
    return captured


def test_serve_applies_request_size_limit(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=50 * 1024 * 1024)

    assert captured["config_kwargs"]["limit_max_request_size"] == 50 * 1024 * 1024
    assert captured["config_kwargs"]["root_path"] == "/api"
    assert captured["root_path"] == "/api"
    assert captured["server_run"] is True
    assert captured["app_state_server"] is captured["server_instance"]


def test_serve_omits_limit_when_disabled(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=0)

    assert "limit_max_request_size" not in captured["config_kwargs"]


def test_serve_skips_limit_for_older_uvicorn(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=1024, supports_limit=False)

    assert "limit_max_request_size" not in captured["config_kwargs"]
    assert captured["server_run"] is True


@pytest.fixture()
def cli_env(monkeypatch, temp_config):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    return CliRunner(), CourseRepository(temp_config)


def test_create_user_and_course_commands(cli_env):
    runner, repository = cli_env

    result = runner.invoke(run.cli, ["create-user", "prof", "--first-name", "Ada"])
    assert result.exit_code == 0, result.output
    assert "Created user prof" in result.output

    duplicate = runner.invoke(run.cli, ["create-user", "prof"])
    assert duplicate.exit_code != 0

    result = runner.invoke(
        run.cli,
        ["create-course", "csc108", "Intro to CS", "--hidden", "--instructor", "prof"],
    )
    assert result.exit_code == 0, result.output

    course = repository.find_course_by_name("csc108")
    assert course is not None and course.is_hidden is True
    prof = repository.find_user_by_name("prof")
    assert repository.get_role(prof.id, course.id).type == INSTRUCTOR

    invalid = runner.invoke(run.cli, ["create-course", "bad name", "Broken"])
    assert invalid.exit_code == 1

    unknown = runner.invoke(run.cli, ["create-course", "csc148", "Intro II", "--instructor", "ghost"])
    assert unknown.exit_code != 0
    assert repository.find_course_by_name("csc148") is None


def test_assignment_list_commands(cli_env, tmp_path):
    runner, repository = cli_env
    repository.add_course("csc108", "Intro")
    source = tmp_path / "assignments.yaml"
    source.write_text(
        yaml.safe_dump(
            {"assignments": [{"short_identifier": "A1", "description": "One", "due_date": "2024-03-01 12:00"}]}
        ),
        encoding="utf-8",
    )

    result = runner.invoke(run.cli, ["upload-assignments", "csc108", str(source)])
    assert result.exit_code == 0, result.output
    assert "1 objects successfully uploaded." in result.output

    output = tmp_path / "out.csv"
    result = runner.invoke(run.cli, ["download-assignments", "csc108", "-o", str(output)])
    assert result.exit_code == 0, result.output
    assert output.read_text(encoding="utf-8").startswith("A1,One,2024-03-01T12:00:00+00:00")

    printed = runner.invoke(run.cli, ["download-assignments", "csc108", "--format", "yml"])
    assert yaml.safe_load(printed.output)["assignments"][0]["short_identifier"] == "A1"

    missing = runner.invoke(run.cli, ["download-assignments", "csc999"])
    assert missing.exit_code != 0


def test_export_students_and_public_jwk(cli_env, temp_config):
    runner, repository = cli_env
    course_id = repository.add_course("csc108", "Intro")
    student = repository.add_user("amy", "Amy", "First", email="amy@example.com")
    repository.add_role(student, course_id, STUDENT)

    result = runner.invoke(run.cli, ["export-students", "csc108"])
    assert result.exit_code == 0, result.output
    assert result.output == "amy,First,Amy,,,amy@example.com\n"

    result = runner.invoke(run.cli, ["public-jwk"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["keys"][0]["kty"] == "RSA"
    assert temp_config.lti.key_file.exists()


def test_overview_command_console_style(cli_env):
    runner, repository = cli_env
    repository.add_course("csc108", "Intro")

    result = runner.invoke(run.cli, ["overview", "--style", "console"])

    assert result.exit_code == 0, result.output
    assert "Course: csc108 (Intro)" in result.output


def test_enrol_command_creates_section_once(cli_env):
    runner, repository = cli_env
    course_id = repository.add_course("csc108", "Intro")
    amy = repository.add_user("amy", "Amy", "First")
    bob = repository.add_user("bob", "Bob", "Second")

    result = runner.invoke(run.cli, ["enrol", "csc108", "amy", "--section", "LEC0101"])
    assert result.exit_code == 0, result.output
    assert "Enrolled amy in csc108 as Student" in result.output

    result = runner.invoke(run.cli, ["enrol", "csc108", "bob", "--section", "LEC0101"])
    assert result.exit_code == 0, result.output

    section = repository.find_section(course_id, "LEC0101")
    assert section is not None
    assert repository.get_role(amy, course_id).section_id == section.id
    assert repository.get_role(bob, course_id).section_id == section.id

    again = runner.invoke(run.cli, ["enrol", "csc108", "amy"])
    assert again.exit_code != 0

    repository.add_user("cat", "Cat", "Third")
    bad_role = runner.invoke(run.cli, ["enrol", "csc108", "cat", "--role", "Dean"])
    assert bad_role.exit_code != 0
