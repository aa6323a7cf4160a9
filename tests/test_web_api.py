from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import pytest
import yaml

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from course_manager.services.storage import INSTRUCTOR, STUDENT, CourseRepository
from course_manager.web import create_app
from course_manager.web import server as web_server


def _make_client(repository: CourseRepository, config, **kwargs) -> TestClient:
    return TestClient(create_app(repository, config=config, **kwargs))


def _sign_in(client: TestClient, user_name: str) -> None:
    response = client.post("/api/session", json={"user_name": user_name})
    assert response.status_code == 200, response.text


def _seed(repository: CourseRepository) -> dict:
    admin = repository.add_user("root", "Root", "Admin", admin=True)
    prof = repository.add_user("prof", "Ada", "Lovelace")
    student = repository.add_user("student", "Sam", "Student", email="sam@example.com")
    course_id = repository.add_course("csc108", "Intro to CS", is_hidden=False)
    repository.add_role(prof, course_id, INSTRUCTOR)
    repository.add_role(student, course_id, STUDENT)
    return {"admin": admin, "prof": prof, "student": student, "course_id": course_id}


def test_api_requires_session(repository: CourseRepository, temp_config) -> None:
    with _make_client(repository, temp_config) as client:
        response = client.get("/api/courses")
        assert response.status_code == 403
        assert response.json()["detail"] == "Session expired"

        assert client.post("/api/session", json={"user_name": "ghost"}).status_code == 403
        assert client.get("/api/session").json() == {"user": None}


def test_sign_in_and_out(repository: CourseRepository, temp_config) -> None:
    _seed(repository)
    with _make_client(repository, temp_config) as client:
        _sign_in(client, "prof")
        assert client.get("/api/session").json()["user"]["user_name"] == "prof"

        courses = client.get("/api/courses").json()["courses"]
        assert [course["name"] for course in courses] == ["csc108"]

        assert client.delete("/api/session").status_code == 204
        assert client.get("/api/courses").status_code == 403


def test_admin_creates_and_instructor_updates_course(repository: CourseRepository, temp_config) -> None:
    seed = _seed(repository)
    with _make_client(repository, temp_config) as client:
        _sign_in(client, "prof")
        forbidden = client.post("/api/courses", json={"name": "csc148", "display_name": "Intro II"})
        assert forbidden.status_code == 403

        updated = client.put(
            f"/api/courses/{seed['course_id']}",
            json={"display_name": "Introduction", "max_file_size": 1000},
        )
        assert updated.status_code == 200
        assert updated.json()["course"]["display_name"] == "Introduction"

        invalid = client.put(f"/api/courses/{seed['course_id']}", json={"max_file_size": -1})
        assert invalid.status_code == 422
        assert "max_file_size" in invalid.json()["detail"]["errors"]

        _sign_in(client, "root")
        created = client.post(
            "/api/courses", json={"name": "csc148", "display_name": "Intro II", "is_hidden": True}
        )
        assert created.status_code == 201
        assert created.json()["course"]["is_hidden"] is True

        duplicate = client.post("/api/courses", json={"name": "csc148", "display_name": "Again"})
        assert duplicate.status_code == 422

        jobs = client.get("/api/jobs").json()["jobs"]
        assert {job["operation"] for job in jobs} == {"update_repo_max_file_size"}
        assert len(jobs) == 2

        assert client.get("/api/courses/9999").status_code == 404


def test_students_cannot_manage_courses(repository: CourseRepository, temp_config) -> None:
    seed = _seed(repository)
    with _make_client(repository, temp_config) as client:
        _sign_in(client, "student")
        assert client.get(f"/api/courses/{seed['course_id']}").status_code == 200
        assert (
            client.put(f"/api/courses/{seed['course_id']}", json={"display_name": "Mine"}).status_code
            == 403
        )
        assert (
            client.get(f"/api/courses/{seed['course_id']}/students/download").status_code == 403
        )


def test_assignment_endpoints(repository: CourseRepository, temp_config) -> None:
    seed = _seed(repository)
    course_id = seed["course_id"]
    soon = datetime.now(timezone.utc) + timedelta(days=1)
    later = datetime.now(timezone.utc) + timedelta(days=20)

    with _make_client(repository, temp_config) as client:
        _sign_in(client, "prof")
        first = client.post(
            f"/api/courses/{course_id}/assignments",
            json={
                "short_identifier": "A1",
                "description": "First",
                "due_date": soon.isoformat(),
                "is_hidden": False,
            },
        )
        assert first.status_code == 201, first.text
        hidden = client.post(
            f"/api/courses/{course_id}/assignments",
            json={"short_identifier": "A2", "description": "Hidden", "due_date": later.isoformat()},
        )
        assert hidden.status_code == 201
        assert hidden.json()["assignment"]["is_hidden"] is True

        bad = client.post(
            f"/api/courses/{course_id}/assignments",
            json={"short_identifier": "A3", "description": "Bad", "due_date": "soon"},
        )
        assert bad.status_code == 422

        renamed = client.put(
            f"/api/assignments/{first.json()['assignment']['id']}",
            json={"description": "First assignment"},
        )
        assert renamed.json()["assignment"]["description"] == "First assignment"

        current = client.get(f"/api/courses/{course_id}/assignments/current").json()
        assert current["assignment"]["short_identifier"] == "A1"

        required = client.get(f"/api/courses/{course_id}/required_files").json()
        assert required == {"assignments": {"A1": {"required": [], "required_only": False}}}

        _sign_in(client, "student")
        visible = client.get(f"/api/courses/{course_id}/assignments").json()["assignments"]
        assert [assignment["short_identifier"] for assignment in visible] == ["A1"]


def test_assignment_list_upload_and_download(repository: CourseRepository, temp_config) -> None:
    seed = _seed(repository)
    course_id = seed["course_id"]

    with _make_client(repository, temp_config) as client:
        _sign_in(client, "prof")
        upload = client.post(
            f"/api/courses/{course_id}/assignments/upload",
            data={"format": "csv"},
            files={
                "upload_file": (
                    "assignments.csv",
                    io.BytesIO(b"A1,First,2024-03-01 12:00\nbad id,Broken,2024-03-01 12:00\n"),
                    "text/csv",
                )
            },
        )
        assert upload.status_code == 200
        assert upload.json() == {
            "invalid_lines": "The following CSV rows were invalid: bad id,Broken,2024-03-01 12:00",
            "valid_lines": "1 objects successfully uploaded.",
        }

        csv_download = client.get(f"/api/courses/{course_id}/assignments/download?format=csv")
        assert csv_download.status_code == 200
        assert csv_download.headers["content-type"].startswith("text/csv")
        assert "attachment" in csv_download.headers["content-disposition"]
        assert csv_download.text.startswith("A1,First,2024-03-01T12:00:00+00:00")

        yml_download = client.get(f"/api/courses/{course_id}/assignments/download?format=yml")
        document = yaml.safe_load(yml_download.text)
        assert document["assignments"][0]["short_identifier"] == "A1"

        broken_yaml = client.post(
            f"/api/courses/{course_id}/assignments/upload",
            data={"format": "yml"},
            files={"upload_file": ("a.yml", io.BytesIO(b"- not: the right shape\n"), "text/yaml")},
        )
        assert broken_yaml.status_code == 400

        unsupported = client.get(f"/api/courses/{course_id}/assignments/download?format=xlsx")
        assert unsupported.status_code == 400


def test_student_download(repository: CourseRepository, temp_config) -> None:
    seed = _seed(repository)
    with _make_client(repository, temp_config) as client:
        _sign_in(client, "prof")
        csv_response = client.get(f"/api/courses/{seed['course_id']}/students/download")
        assert csv_response.text == "student,Student,Sam,,,sam@example.com\n"

        yml_response = client.get(
            f"/api/courses/{seed['course_id']}/students/download", params={"format": "yaml"}
        )
        assert yaml.safe_load(yml_response.text)[0]["email"] == "sam@example.com"


def test_autotest_url_upstream_failure_is_bad_gateway(repository: CourseRepository, temp_config) -> None:
    import httpx

    seed = _seed(repository)
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    with _make_client(repository, temp_config, http_transport=transport) as client:
        _sign_in(client, "prof")
        response = client.put(
            f"/api/courses/{seed['course_id']}/autotest_url", json={"url": "http://autotest.local"}
        )
        assert response.status_code == 502


def test_exam_template_endpoints(repository: CourseRepository, temp_config) -> None:
    fitz = pytest.importorskip("fitz")
    document = fitz.open()
    for _ in range(2):
        document.new_page(width=200, height=300)
    pdf_bytes = document.tobytes()
    document.close()

    seed = _seed(repository)
    (assignment_id,) = repository.save_assignments(
        seed["course_id"],
        [(None, {"short_identifier": "Midterm", "description": "Exam", "repository_folder": "Midterm",
                 "due_date": datetime(2024, 3, 1, tzinfo=timezone.utc), "scanned_exam": True})],
    )

    with _make_client(repository, temp_config) as client:
        _sign_in(client, "prof")
        created = client.post(
            f"/api/assignments/{assignment_id}/exam_templates",
            data={"name": "Version A"},
            files={"upload_file": ("exam.pdf", io.BytesIO(pdf_bytes), "application/pdf")},
        )
        assert created.status_code == 201, created.text
        template_id = created.json()["exam_template"]["id"]
        assert created.json()["exam_template"]["num_pages"] == 2

        updated = client.put(
            f"/api/exam_templates/{template_id}",
            json={
                "crop": {"x": 0.0, "y": 0.0, "width": 0.5, "height": 0.5},
                "divisions": [{"label": "Q1", "start_page": 1, "end_page": 2}],
            },
        )
        assert updated.status_code == 200
        assert updated.json()["exam_template"]["crop"] == [0.0, 0.0, 0.5, 0.5]
        assert updated.json()["exam_template"]["divisions"][0]["label"] == "Q1"

        invalid = client.put(
            f"/api/exam_templates/{template_id}",
            json={"divisions": [{"label": "Q1", "start_page": 1, "end_page": 5}]},
        )
        assert invalid.status_code == 422

        listing = client.get(f"/api/assignments/{assignment_id}/exam_templates").json()
        assert [template["name"] for template in listing["exam_templates"]] == ["Version A"]

        cover = client.get(f"/api/exam_templates/{template_id}/cover", params={"cropped": "true"})
        assert cover.status_code == 200
        assert cover.headers["content-type"] == "image/png"

        assert client.delete(f"/api/exam_templates/{template_id}").status_code == 204
        assert client.get(f"/api/exam_templates/{template_id}/cover").status_code == 404


def test_public_jwk_does_not_require_login(repository: CourseRepository, temp_config) -> None:
    with _make_client(repository, temp_config) as client:
        response = client.get("/lti/public_jwk")
        assert response.status_code == 200
        (key,) = response.json()["keys"]
        assert key["kty"] == "RSA" and key["alg"] == "RS256"

        configuration = client.get("/lti/config").json()
        assert configuration["public_jwk_url"] == "http://testserver/lti/public_jwk"


def _launch(client: TestClient, lms_platform) -> int:
    started = client.post(
        "/lti/launch",
        data={
            "iss": lms_platform.issuer,
            "login_hint": "hint",
            "client_id": "tool-client",
            "target_link_uri": "http://testserver/lti/redirect_login",
        },
        follow_redirects=False,
    )
    assert started.status_code == 302
    query = parse_qs(urlsplit(started.headers["location"]).query)
    assert query["redirect_uri"] == ["http://testserver/lti/redirect_login"]

    token = lms_platform.id_token(client_id="tool-client", nonce=query["nonce"][0])
    finished = client.post(
        "/lti/redirect_login",
        data={"id_token": token, "state": query["state"][0]},
        follow_redirects=False,
    )
    assert finished.status_code == 302, finished.text
    location = urlsplit(finished.headers["location"]).path
    assert location.startswith("/lti/deployments/") and location.endswith("/choose_course")
    return int(location.split("/")[3])


def test_lti_launch_and_choose_course(
    repository: CourseRepository, temp_config, lms_platform
) -> None:
    seed = _seed(repository)
    with _make_client(repository, temp_config, http_transport=lms_platform.transport) as client:
        deployment_id = _launch(client, lms_platform)

        anonymous = client.get(
            f"/lti/deployments/{deployment_id}/choose_course", follow_redirects=False
        )
        assert anonymous.status_code == 302
        assert anonymous.headers["location"].endswith("/login")

        _sign_in(client, "prof")
        page = client.get(f"/lti/deployments/{deployment_id}/choose_course").json()
        assert page["deployment"]["lms_course_name"] == "CSC108 Fall"
        assert [course["name"] for course in page["courses"]] == ["csc108"]

        other = client.post(
            f"/lti/deployments/{deployment_id + 1}/choose_course",
            data={"course": seed["course_id"]},
            follow_redirects=False,
        )
        assert other.status_code == 403

        linked = client.post(
            f"/lti/deployments/{deployment_id}/choose_course",
            data={"course": seed["course_id"]},
            follow_redirects=False,
        )
        assert linked.status_code == 302
        assert urlsplit(linked.headers["location"]).path == f"/api/courses/{seed['course_id']}"
        assert repository.get_lti_deployment(deployment_id).course_id == seed["course_id"]


def test_lti_create_course_and_permission_denied(
    repository: CourseRepository, temp_config, lms_platform
) -> None:
    seed = _seed(repository)
    other_course = repository.add_course("csc148", "Intro II")
    with _make_client(repository, temp_config, http_transport=lms_platform.transport) as client:
        deployment_id = _launch(client, lms_platform)
        _sign_in(client, "prof")

        denied = client.post(
            f"/lti/deployments/{deployment_id}/choose_course",
            data={"course": other_course},
            follow_redirects=False,
        )
        assert denied.status_code == 303
        assert urlsplit(denied.headers["location"]).path == (
            f"/lti/deployments/{deployment_id}/choose_course"
        )
        page = client.get(f"/lti/deployments/{deployment_id}/choose_course").json()
        assert page["error"] == "You do not have permission to link Intro II"
        assert client.get(f"/lti/deployments/{deployment_id}/choose_course").json()["error"] is None
        assert repository.get_lti_deployment(deployment_id).course_id is None

        created = client.post(
            f"/lti/deployments/{deployment_id}/create_course",
            data={"name": "csc209", "display_name": "Systems"},
            follow_redirects=False,
        )
        assert created.status_code == 302
        course = repository.find_course_by_name("csc209")
        assert course is not None and course.is_hidden is True
        assert repository.get_role(seed["prof"], course.id).type == INSTRUCTOR
        assert repository.get_lti_deployment(deployment_id).course_id == course.id


def test_lti_launch_rejects_unknown_platform(repository: CourseRepository, temp_config) -> None:
    with _make_client(repository, temp_config) as client:
        response = client.get(
            "/lti/launch",
            params={
                "iss": "https://elsewhere.example.com",
                "login_hint": "hint",
                "client_id": "tool-client",
                "target_link_uri": "http://testserver/lti/redirect_login",
            },
            follow_redirects=False,
        )
        assert response.status_code == 400

        stale = client.post(
            "/lti/redirect_login", data={"id_token": "x", "state": "y"}, follow_redirects=False
        )
        assert stale.status_code == 400


def test_max_upload_bytes_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("COURSE_MANAGER_MAX_UPLOAD_BYTES", "1024")
    assert web_server.get_max_upload_bytes() == 1024
    monkeypatch.setenv("COURSE_MANAGER_MAX_UPLOAD_BYTES", "lots")
    assert web_server.get_max_upload_bytes() == 50 * 1024 * 1024


def test_students_do_not_see_hidden_courses_or_assignments(
    repository: CourseRepository, temp_config
) -> None:
    seed = _seed(repository)
    course_id = seed["course_id"]
    secret_id = repository.add_course("secret", "Hidden course", is_hidden=True)
    repository.add_role(seed["student"], secret_id, STUDENT)
    repository.add_role(seed["prof"], secret_id, INSTRUCTOR)
    now = datetime.now(timezone.utc)
    repository.save_assignments(
        course_id,
        [
            (None, {"short_identifier": "A1", "description": "Hidden", "due_date": now + timedelta(days=1),
                    "repository_folder": "A1", "is_hidden": True}),
            (None, {"short_identifier": "A2", "description": "Open", "due_date": now + timedelta(days=9),
                    "repository_folder": "A2", "is_hidden": False}),
        ],
    )

    with _make_client(repository, temp_config) as client:
        _sign_in(client, "student")
        courses = client.get("/api/courses").json()["courses"]
        assert [course["name"] for course in courses] == ["csc108"]
        assert client.get(f"/api/courses/{secret_id}").status_code == 404
        assert client.get(f"/api/courses/{secret_id}/assignments").status_code == 404

        current = client.get(f"/api/courses/{course_id}/assignments/current").json()
        assert current["assignment"]["short_identifier"] == "A2"
        listed = client.get(f"/api/courses/{course_id}/assignments").json()["assignments"]
        assert [assignment["short_identifier"] for assignment in listed] == ["A2"]

        _sign_in(client, "prof")
        courses = client.get("/api/courses").json()["courses"]
        assert [course["name"] for course in courses] == ["csc108", "secret"]
        assert client.get(f"/api/courses/{secret_id}").status_code == 200
        current = client.get(f"/api/courses/{course_id}/assignments/current").json()
        assert current["assignment"]["short_identifier"] == "A1"
