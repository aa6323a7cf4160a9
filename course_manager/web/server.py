"""FastAPI application serving the Course Manager API and LTI endpoints."""

from __future__ import annotations

import contextlib
import logging
import os
import sys
from collections.abc import AsyncIterator, Iterator
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Body, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi import status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse, Response
from pydantic import BaseModel, Field
from starlette.datastructures import FormData
from starlette.middleware.sessions import SessionMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..services.assignment_lists import AssignmentListError, AssignmentListService
from ..services.autotest import AutotestClient, AutotestError
from ..services.courses import CourseService, RecordNotFoundError
from ..services.events import (
    ACTOR,
    JOB_ID,
    REQUEST_ID,
    current_correlation,
    emit_db_event,
    emit_structured_event,
    new_correlation_id,
)
from ..services.exam_templates import ExamTemplateError, ExamTemplateService
from ..services.jobs import JobQueue, build_job_processor, default_job_handlers
from ..services.lti import (
    SESSION_DEPLOYMENT_KEY,
    LtiError,
    LtiKeyStore,
    LtiLaunchService,
    LtiPermissionError,
    LtiProvisioner,
)
from ..services.naming import build_download_name
from ..services.storage import (
    INSTRUCTOR,
    AssignmentRecord,
    CourseRecord,
    CourseRepository,
    ExamTemplateRecord,
    TemplateDivisionRecord,
    UserRecord,
)
from ..services.validation import ValidationError


_MAX_UPLOAD_ENV = "COURSE_MANAGER_MAX_UPLOAD_BYTES"
_DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024
_SESSION_USER_KEY = "user_id"
_SESSION_FLASH_KEY = "flash_error"
_MEDIA_TYPES = {"csv": "text/csv", "yml": "application/x-yaml"}


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes."""

    try:
        return int((os.environ.get(_MAX_UPLOAD_ENV) or "").strip() or _DEFAULT_MAX_UPLOAD_BYTES)
    except ValueError:
        return _DEFAULT_MAX_UPLOAD_BYTES


class LargeUploadRequest(Request):
    """Request subclass that applies the configured multipart upload limit."""

    async def _get_form(
        self,
        *,
        max_files: int | float = 1000,
        max_fields: int | float = 1000,
        max_part_size: int = 1024 * 1024,
    ) -> FormData:
        configured_limit = get_max_upload_bytes()
        effective_limit = int(max_part_size)
        if configured_limit > 0:
            effective_limit = max(int(configured_limit), effective_limit)
        else:
            effective_limit = sys.maxsize
        return await super()._get_form(
            max_files=max_files,
            max_fields=max_fields,
            max_part_size=effective_limit,
        )


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = new_correlation_id()
        scope.setdefault("state", {})
        if isinstance(scope["state"], dict):
            scope["state"]["request_id"] = request_id

        method = scope.get("method")
        request_token = REQUEST_ID.set(request_id)
        actor_token = ACTOR.set(f"request:{method}" if isinstance(method, str) else "request")
        job_token = JOB_ID.set(None)
        try:
            await self.app(scope, receive, send)
        finally:
            JOB_ID.reset(job_token)
            ACTOR.reset(actor_token)
            REQUEST_ID.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra or {})
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in current_correlation().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("course_manager.web.events"), {})


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event("APP_EVENT", message, context=context, logger=EVENT_LOGGER)


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


@contextlib.contextmanager
def _translate_errors() -> Iterator[None]:
    """Map domain exceptions raised inside the block to HTTP errors."""

    try:
        yield
    except RecordNotFoundError as error:
        raise HTTPException(status_code=404, detail=str(error)) from error
    except ValidationError as error:
        raise HTTPException(
            status_code=422, detail={"message": str(error), "errors": error.errors}
        ) from error
    except (AssignmentListError, ExamTemplateError) as error:
        raise HTTPException(status_code=400, detail=str(error)) from error
    except LtiPermissionError as error:
        raise HTTPException(status_code=403, detail=str(error)) from error
    except LtiError as error:
        raise HTTPException(status_code=400, detail=str(error)) from error
    except AutotestError as error:
        raise HTTPException(status_code=502, detail=str(error)) from error


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _serialize_user(user: UserRecord) -> Dict[str, Any]:
    return {
        "id": user.id,
        "user_name": user.user_name,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
        "type": user.type,
    }


def _serialize_course(course: CourseRecord) -> Dict[str, Any]:
    return asdict(course)


def _serialize_assignment(assignment: AssignmentRecord) -> Dict[str, Any]:
    payload = asdict(assignment)
    payload["due_date"] = _isoformat(assignment.due_date)
    payload["remark_due_date"] = _isoformat(assignment.remark_due_date)
    return payload


def _serialize_template(
    template: ExamTemplateRecord, divisions: List[TemplateDivisionRecord]
) -> Dict[str, Any]:
    payload = asdict(template)
    payload["crop"] = list(template.crop_box) if template.crop_box else None
    payload["divisions"] = [
        {
            "id": division.id,
            "label": division.label,
            "start_page": division.start_page,
            "end_page": division.end_page,
        }
        for division in divisions
    ]
    return payload


class SessionPayload(BaseModel):
    user_name: str = Field(..., min_length=1)


class CourseCreatePayload(BaseModel):
    name: str
    display_name: str
    is_hidden: bool = False
    max_file_size: Optional[int] = None


class CourseUpdatePayload(BaseModel):
    name: Optional[str] = None
    display_name: Optional[str] = None
    is_hidden: Optional[bool] = None
    max_file_size: Optional[int] = None


class AutotestUrlPayload(BaseModel):
    url: str = Field(..., min_length=1)


class DivisionPayload(BaseModel):
    label: str
    start_page: int
    end_page: int


class CropPayload(BaseModel):
    x: float
    y: float
    width: float
    height: float


class ExamTemplateUpdatePayload(BaseModel):
    name: Optional[str] = None
    automatic_parsing: Optional[bool] = None
    crop: Optional[CropPayload] = None
    divisions: Optional[List[DivisionPayload]] = None


def create_app(
    repository: CourseRepository,
    *,
    config: AppConfig,
    root_path: str | None = None,
    http_transport: Optional[httpx.BaseTransport] = None,
) -> FastAPI:
    """Return a configured FastAPI application.

    ``http_transport`` replaces the network transport used to reach LMS
    platforms and autotest servers.
    """

    def _repository_event_emitter(action: str, **kwargs: Any) -> None:
        emit_db_event(action, logger=EVENT_LOGGER, **kwargs)

    repository.configure_event_emitter(_repository_event_emitter)

    job_queue = JobQueue(build_job_processor(default_job_handlers(repository, config)))
    course_service = CourseService(
        repository,
        config,
        scheduler=job_queue,
        autotest_client=AutotestClient(transport=http_transport),
    )
    assignment_lists = AssignmentListService(repository)
    exam_templates = ExamTemplateService(repository, config)
    key_store = LtiKeyStore(config.lti.key_file)
    launch_service = LtiLaunchService(repository, config, transport=http_transport)
    provisioner = LtiProvisioner(repository, course_service)

    @contextlib.asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        await job_queue.start()
        try:
            yield
        finally:
            await job_queue.stop()

    app = FastAPI(
        title="Course Manager",
        description="Courses, assignment lists and LTI provisioning",
        root_path=_normalize_root_path(root_path),
        request_class=LargeUploadRequest,
        lifespan=_lifespan,
    )
    app.state.job_queue = job_queue
    app.state.course_service = course_service
    app.state.key_store = key_store

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        SessionMiddleware,
        secret_key=config.session_secret,
        session_cookie="course_manager_session",
        same_site="lax",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------
    # Access helpers
    # ------------------------------------------------------------------
    def _session_user(request: Request) -> Optional[UserRecord]:
        user_id = request.session.get(_SESSION_USER_KEY)
        if user_id is None:
            return None
        user = repository.get_user(int(user_id))
        if user is None:
            request.session.pop(_SESSION_USER_KEY, None)
        else:
            ACTOR.set(f"user:{user.user_name}")
        return user

    def _require_user(request: Request) -> UserRecord:
        user = _session_user(request)
        if user is None:
            raise HTTPException(status_code=403, detail="Session expired")
        return user

    def _require_course(user: UserRecord, course_id: int, *, manage: bool = False) -> CourseRecord:
        course = repository.get_course(course_id)
        if course is None:
            raise HTTPException(status_code=404, detail="Course not found")
        if user.is_admin:
            return course
        role = repository.get_role(user.id, course_id)
        if role is None or (manage and role.type != INSTRUCTOR):
            raise HTTPException(status_code=403, detail="You are not allowed to manage this course")
        if course.is_hidden and role.type != INSTRUCTOR:
            raise HTTPException(status_code=404, detail="Course not found")
        return course

    def _sees_hidden(user: UserRecord, course_id: int) -> bool:
        if user.is_admin:
            return True
        role = repository.get_role(user.id, course_id)
        return role is not None and role.type == INSTRUCTOR

    def _require_assignment(user: UserRecord, assignment_id: int) -> AssignmentRecord:
        assignment = repository.get_assignment(assignment_id)
        if assignment is None:
            raise HTTPException(status_code=404, detail="Assignment not found")
        _require_course(user, assignment.course_id, manage=True)
        return assignment

    def _require_template(user: UserRecord, template_id: int) -> ExamTemplateRecord:
        template = repository.get_exam_template(template_id)
        if template is None:
            raise HTTPException(status_code=404, detail="Exam template not found")
        _require_assignment(user, template.assignment_id)
        return template

    def _download(content: str, course: CourseRecord, kind: str, file_format: str) -> Response:
        filename = build_download_name(course.name, kind, file_format)
        return Response(
            content=content,
            media_type=_MEDIA_TYPES[file_format],
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    def _normalize_format(value: str) -> str:
        normalized = value.strip().lower()
        if normalized == "yaml":
            normalized = "yml"
        if normalized not in _MEDIA_TYPES:
            raise HTTPException(status_code=400, detail=f"Unsupported format '{value}'")
        return normalized

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    @app.get("/login")
    async def login_hint(request: Request) -> Dict[str, Any]:
        return {"detail": "Sign in with POST /api/session", "signed_in": _session_user(request) is not None}

    @app.get("/api/session")
    async def get_session(request: Request) -> Dict[str, Any]:
        user = _session_user(request)
        return {"user": _serialize_user(user) if user else None}

    @app.post("/api/session")
    async def create_session(request: Request, payload: SessionPayload) -> Dict[str, Any]:
        user = repository.find_user_by_name(payload.user_name.strip())
        if user is None:
            _log_event("Rejected sign in", user_name=payload.user_name)
            raise HTTPException(status_code=403, detail="Login failed")
        request.session[_SESSION_USER_KEY] = user.id
        _log_event("Signed in", user_name=user.user_name)
        return {"user": _serialize_user(user)}

    @app.delete("/api/session", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
    async def delete_session(request: Request) -> Response:
        request.session.clear()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ------------------------------------------------------------------
    # Courses
    # ------------------------------------------------------------------
    @app.get("/api/courses")
    async def list_courses(request: Request) -> Dict[str, Any]:
        user = _require_user(request)
        courses = (
            repository.iter_courses() if user.is_admin else repository.iter_courses_for_user(user.id)
        )
        courses = [
            course for course in courses if not course.is_hidden or _sees_hidden(user, course.id)
        ]
        return {"courses": [_serialize_course(course) for course in courses]}

    @app.post("/api/courses", status_code=status.HTTP_201_CREATED)
    async def create_course(request: Request, payload: CourseCreatePayload) -> Dict[str, Any]:
        user = _require_user(request)
        if not user.is_admin:
            raise HTTPException(status_code=403, detail="Only administrators may create courses")
        with _translate_errors():
            course = course_service.create_course(
                payload.name,
                payload.display_name,
                is_hidden=payload.is_hidden,
                max_file_size=payload.max_file_size,
            )
        _log_event("Created course", course_id=course.id)
        return {"course": _serialize_course(course)}

    @app.get("/api/courses/{course_id}")
    async def get_course(request: Request, course_id: int) -> Dict[str, Any]:
        course = _require_course(_require_user(request), course_id)
        return {"course": _serialize_course(course)}

    @app.put("/api/courses/{course_id}")
    async def update_course(
        request: Request, course_id: int, payload: CourseUpdatePayload
    ) -> Dict[str, Any]:
        _require_course(_require_user(request), course_id, manage=True)
        changes = payload.model_dump(exclude_unset=True)
        with _translate_errors():
            course = course_service.update_course(course_id, **changes)
        return {"course": _serialize_course(course)}

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------
    @app.get("/api/courses/{course_id}/assignments")
    async def list_assignments(request: Request, course_id: int) -> Dict[str, Any]:
        user = _require_user(request)
        _require_course(user, course_id)
        assignments = repository.iter_assignments(course_id)
        if not _sees_hidden(user, course_id):
            assignments = [assignment for assignment in assignments if not assignment.is_hidden]
        return {"assignments": [_serialize_assignment(a) for a in assignments]}

    @app.post("/api/courses/{course_id}/assignments", status_code=status.HTTP_201_CREATED)
    async def create_assignment(
        request: Request, course_id: int, payload: Dict[str, Any] = Body(...)
    ) -> Dict[str, Any]:
        _require_course(_require_user(request), course_id, manage=True)
        with _translate_errors():
            assignment = course_service.create_assignment(course_id, payload)
        return {"assignment": _serialize_assignment(assignment)}

    @app.put("/api/assignments/{assignment_id}")
    async def update_assignment(
        request: Request, assignment_id: int, payload: Dict[str, Any] = Body(...)
    ) -> Dict[str, Any]:
        _require_assignment(_require_user(request), assignment_id)
        with _translate_errors():
            assignment = course_service.update_assignment(assignment_id, payload)
        return {"assignment": _serialize_assignment(assignment)}

    @app.get("/api/courses/{course_id}/assignments/current")
    async def current_assignment(request: Request, course_id: int) -> Dict[str, Any]:
        user = _require_user(request)
        _require_course(user, course_id)
        assignment = course_service.get_current_assignment(
            course_id, include_hidden=_sees_hidden(user, course_id)
        )
        return {"assignment": _serialize_assignment(assignment) if assignment else None}

    @app.get("/api/courses/{course_id}/assignments/download")
    async def download_assignments(
        request: Request, course_id: int, file_format: str = Query("csv", alias="format")
    ) -> Response:
        course = _require_course(_require_user(request), course_id, manage=True)
        file_format = _normalize_format(file_format)
        with _translate_errors():
            content = assignment_lists.get_assignment_list(course_id, file_format)
        return _download(content, course, "assignments", file_format)

    @app.post("/api/courses/{course_id}/assignments/upload")
    async def upload_assignments(
        request: Request,
        course_id: int,
        upload_file: UploadFile = File(...),
        file_format: str = Form("csv", alias="format"),
        encoding: str = Form("utf-8"),
    ) -> Dict[str, Any]:
        _require_course(_require_user(request), course_id, manage=True)
        raw = await upload_file.read()
        try:
            data = raw.decode(encoding or "utf-8")
        except (LookupError, UnicodeDecodeError) as error:
            raise HTTPException(status_code=400, detail=f"Could not decode upload: {error}") from error
        with _translate_errors():
            result = assignment_lists.upload_assignment_list(
                course_id, _normalize_format(file_format), data
            )
        return result

    @app.get("/api/courses/{course_id}/required_files")
    async def required_files(request: Request, course_id: int) -> Dict[str, Any]:
        _require_course(_require_user(request), course_id)
        return {"assignments": course_service.get_required_files(course_id)}

    @app.get("/api/courses/{course_id}/students/download")
    async def download_students(
        request: Request, course_id: int, file_format: str = Query("csv", alias="format")
    ) -> Response:
        course = _require_course(_require_user(request), course_id, manage=True)
        file_format = _normalize_format(file_format)
        if file_format == "csv":
            content = course_service.export_student_data_csv(course_id)
        else:
            content = course_service.export_student_data_yml(course_id)
        return _download(content, course, "students", file_format)

    @app.put("/api/courses/{course_id}/autotest_url")
    async def update_autotest_url(
        request: Request, course_id: int, payload: AutotestUrlPayload
    ) -> Dict[str, Any]:
        _require_course(_require_user(request), course_id, manage=True)
        with _translate_errors():
            setting = course_service.update_autotest_url(course_id, payload.url)
        return {"autotest_setting": {"id": setting.id, "url": setting.url}}

    # ------------------------------------------------------------------
    # Exam templates
    # ------------------------------------------------------------------
    @app.get("/api/assignments/{assignment_id}/exam_templates")
    async def list_exam_templates(request: Request, assignment_id: int) -> Dict[str, Any]:
        _require_assignment(_require_user(request), assignment_id)
        templates = exam_templates.list(assignment_id)
        return {
            "exam_templates": [
                _serialize_template(template, exam_templates.divisions(template.id))
                for template in templates
            ]
        }

    @app.post("/api/assignments/{assignment_id}/exam_templates", status_code=status.HTTP_201_CREATED)
    async def create_exam_template(
        request: Request,
        assignment_id: int,
        name: str = Form(...),
        upload_file: UploadFile = File(...),
    ) -> Dict[str, Any]:
        _require_assignment(_require_user(request), assignment_id)
        pdf_bytes = await upload_file.read()
        with _translate_errors():
            template = exam_templates.create(assignment_id, name, pdf_bytes)
        return {"exam_template": _serialize_template(template, [])}

    @app.put("/api/exam_templates/{template_id}")
    async def update_exam_template(
        request: Request, template_id: int, payload: ExamTemplateUpdatePayload
    ) -> Dict[str, Any]:
        _require_template(_require_user(request), template_id)
        crop = None
        if payload.crop is not None:
            crop = (payload.crop.x, payload.crop.y, payload.crop.width, payload.crop.height)
        divisions = None
        if payload.divisions is not None:
            divisions = [division.model_dump() for division in payload.divisions]
        with _translate_errors():
            template = exam_templates.update(
                template_id,
                name=payload.name,
                automatic_parsing=payload.automatic_parsing,
                crop=crop,
                divisions=divisions,
            )
        return {"exam_template": _serialize_template(template, exam_templates.divisions(template_id))}

    @app.delete(
        "/api/exam_templates/{template_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_exam_template(request: Request, template_id: int) -> Response:
        _require_template(_require_user(request), template_id)
        with _translate_errors():
            exam_templates.delete(template_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/exam_templates/{template_id}/cover")
    async def exam_template_cover(
        request: Request, template_id: int, cropped: bool = Query(False)
    ) -> Response:
        _require_template(_require_user(request), template_id)
        with _translate_errors():
            image = exam_templates.cover_image(template_id, cropped=cropped)
        return Response(content=image, media_type="image/png")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    @app.get("/api/jobs")
    async def list_jobs(request: Request) -> Dict[str, Any]:
        _require_user(request)
        jobs = await job_queue.list()
        return {"jobs": [job.to_payload() for job in jobs]}

    # ------------------------------------------------------------------
    # LTI
    # ------------------------------------------------------------------
    def _login_redirect(request: Request) -> RedirectResponse:
        return RedirectResponse(
            url=f"{request.scope.get('root_path', '')}/login", status_code=status.HTTP_302_FOUND
        )

    def _require_launched_deployment(request: Request, deployment_id: int) -> None:
        if request.session.get(SESSION_DEPLOYMENT_KEY) != deployment_id:
            raise HTTPException(status_code=403, detail="Launch this tool from your LMS first")

    @app.get("/lti/config")
    async def lti_config(request: Request) -> Dict[str, Any]:
        return launch_service.tool_configuration(str(request.base_url))

    @app.api_route("/lti/launch", methods=["GET", "POST"])
    async def lti_launch(request: Request) -> RedirectResponse:
        params: Dict[str, Any] = dict(request.query_params)
        if request.method == "POST":
            form = await request.form()
            params.update({key: value for key, value in form.items() if isinstance(value, str)})
        with _translate_errors():
            url = launch_service.begin_launch(
                params, request.session, str(request.url_for("lti_redirect_login"))
            )
        return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)

    @app.post("/lti/redirect_login", name="lti_redirect_login")
    async def lti_redirect_login(
        request: Request,
        id_token: str = Form(...),
        state: str = Form(...),
    ) -> RedirectResponse:
        with _translate_errors():
            deployment = launch_service.complete_launch(id_token, state, request.session)
        target = request.url_for("lti_choose_course", deployment_id=deployment.id)
        return RedirectResponse(url=str(target), status_code=status.HTTP_302_FOUND)

    @app.get("/lti/deployments/{deployment_id}/choose_course", name="lti_choose_course")
    async def lti_choose_course_page(request: Request, deployment_id: int) -> Any:
        user = _session_user(request)
        if user is None:
            return _login_redirect(request)
        _require_launched_deployment(request, deployment_id)
        with _translate_errors():
            deployment = provisioner.get_deployment(deployment_id)
        return {
            "deployment": asdict(deployment),
            "courses": [_serialize_course(course) for course in provisioner.courses_for_user(user)],
            "error": request.session.pop(_SESSION_FLASH_KEY, None),
        }

    @app.post("/lti/deployments/{deployment_id}/choose_course")
    async def lti_choose_course(
        request: Request, deployment_id: int, course: int = Form(...)
    ) -> Any:
        user = _session_user(request)
        if user is None:
            return _login_redirect(request)
        _require_launched_deployment(request, deployment_id)
        with _translate_errors():
            try:
                linked = provisioner.choose_course(user, deployment_id, course)
            except LtiPermissionError as error:
                request.session[_SESSION_FLASH_KEY] = str(error)
                return RedirectResponse(
                    url=str(request.url_for("lti_choose_course", deployment_id=deployment_id)),
                    status_code=status.HTTP_303_SEE_OTHER,
                )
        return RedirectResponse(
            url=str(request.url_for("get_course", course_id=linked.id)),
            status_code=status.HTTP_302_FOUND,
        )

    @app.post("/lti/deployments/{deployment_id}/create_course")
    async def lti_create_course(
        request: Request,
        deployment_id: int,
        name: str = Form(...),
        display_name: str = Form(...),
    ) -> Any:
        user = _session_user(request)
        if user is None:
            return _login_redirect(request)
        _require_launched_deployment(request, deployment_id)
        with _translate_errors():
            created = provisioner.create_course(user, deployment_id, name, display_name)
        return RedirectResponse(
            url=str(request.url_for("get_course", course_id=created.id)),
            status_code=status.HTTP_302_FOUND,
        )

    @app.get("/lti/public_jwk")
    async def lti_public_jwk() -> Dict[str, Any]:
        with _translate_errors():
            return key_store.public_jwk_set()

    return app


__all__ = [
    "ContextualLoggerAdapter",
    "LargeUploadRequest",
    "RequestContextMiddleware",
    "create_app",
    "get_max_upload_bytes",
]
