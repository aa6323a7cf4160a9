"""Entry-point for the Course Manager application."""

from __future__ import annotations

import inspect
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from course_manager.bootstrap import initialize_app
from course_manager.config import AppConfig
from course_manager.logging_utils import build_log_handlers, configure_logging
from course_manager.services.assignment_lists import AssignmentListError, AssignmentListService
from course_manager.services.courses import CourseService, RecordNotFoundError
from course_manager.services.jobs import InlineJobRunner, default_job_handlers
from course_manager.services.lti import LtiKeyStore
from course_manager.services.storage import INSTRUCTOR, STUDENT, CourseRepository
from course_manager.services.validation import ValidationError
from course_manager.ui.console import ConsoleUI
from course_manager.ui.modern import ModernUI
from course_manager.web import create_app
from course_manager.web.server import get_max_upload_bytes


LOGGER = logging.getLogger("course_manager.cli")


cli = typer.Typer(add_completion=False, help="Course Manager management commands")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


class ListFormat(str, Enum):
    CSV = "csv"
    YML = "yml"


class UIStyle(str, Enum):
    MODERN = "modern"
    CONSOLE = "console"


style_option = typer.Option(
    UIStyle.MODERN,
    "--style",
    "-s",
    help="Select the overview presentation style.",
    show_default=True,
)


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_log_handlers(storage_root))


def _course_service(repository: CourseRepository, config: AppConfig) -> CourseService:
    runner = InlineJobRunner(default_job_handlers(repository, config))
    return CourseService(repository, config, scheduler=runner)


def _find_course_id(repository: CourseRepository, name: str) -> int:
    course = repository.find_course_by_name(name)
    if course is None:
        raise typer.BadParameter(f"Course '{name}' does not exist", param_hint="COURSE")
    return course.id


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="COURSE_MANAGER_ROOT_PATH",
    ),
) -> None:
    """Run the HTTP API."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = CourseRepository(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.warning(
                "Ignoring max upload size limit; uvicorn.Config does not support "
                "'limit_max_request_size'.",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving Course Manager on http://%s:%s%s/", host, port, normalized_root)
    server.run()


@cli.command()
def overview(style: UIStyle = style_option) -> None:
    """Render an overview of stored courses using the chosen UI style."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = CourseRepository(config)
    if style is UIStyle.MODERN:
        ui = ModernUI(repository)
    else:
        ui = ConsoleUI(repository)
    ui.run()


@cli.command("create-user")
def create_user(
    user_name: str = typer.Argument(..., help="Login name"),
    first_name: str = typer.Option("", help="Given name"),
    last_name: str = typer.Option("", help="Family name"),
    email: Optional[str] = typer.Option(None, help="Contact address"),
    admin: bool = typer.Option(False, "--admin", help="Create an administrator"),
) -> None:
    """Create a user account."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    repository = CourseRepository(config)
    if repository.find_user_by_name(user_name) is not None:
        raise typer.BadParameter(f"User '{user_name}' already exists", param_hint="USER_NAME")
    user_id = repository.add_user(
        user_name, first_name, last_name, email=email, admin=admin
    )
    typer.echo(f"Created user {user_name} (id={user_id})")


@cli.command("create-course")
def create_course(
    name: str = typer.Argument(..., help="Short course code, e.g. csc108"),
    display_name: str = typer.Argument(..., help="Human readable title"),
    hidden: bool = typer.Option(False, "--hidden", help="Hide the course from students"),
    max_file_size: Optional[int] = typer.Option(None, help="Repository file size limit in bytes"),
    instructor: Optional[str] = typer.Option(None, help="User name to enrol as instructor"),
) -> None:
    """Create a course and optionally assign its instructor."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    repository = CourseRepository(config)
    service = _course_service(repository, config)

    instructor_record = None
    if instructor is not None:
        instructor_record = repository.find_user_by_name(instructor)
        if instructor_record is None:
            raise typer.BadParameter(f"User '{instructor}' does not exist", param_hint="--instructor")

    try:
        course = service.create_course(
            name, display_name, is_hidden=hidden, max_file_size=max_file_size
        )
    except ValidationError as error:
        typer.echo(f"Could not create course: {error}", err=True)
        raise typer.Exit(code=1) from error

    if instructor_record is not None:
        repository.add_role(instructor_record.id, course.id, INSTRUCTOR)
    typer.echo(f"Created course {course.name} (id={course.id})")


@cli.command()
def enrol(
    course: str = typer.Argument(..., help="Course name"),
    user_name: str = typer.Argument(..., help="User to enrol"),
    role: str = typer.Option(STUDENT, help="Instructor, Ta or Student"),
    section: Optional[str] = typer.Option(None, help="Section name; created when missing"),
) -> None:
    """Give a user a role in a course."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    repository = CourseRepository(config)
    course_id = _find_course_id(repository, course)
    user = repository.find_user_by_name(user_name)
    if user is None:
        raise typer.BadParameter(f"User '{user_name}' does not exist", param_hint="USER_NAME")
    if repository.get_role(user.id, course_id) is not None:
        raise typer.BadParameter(f"User '{user_name}' is already enrolled in {course}")

    section_id = None
    if section:
        existing = repository.find_section(course_id, section)
        section_id = existing.id if existing else repository.add_section(course_id, section)

    try:
        repository.add_role(user.id, course_id, role, section_id=section_id)
    except ValueError as error:
        raise typer.BadParameter(str(error), param_hint="--role") from error
    typer.echo(f"Enrolled {user_name} in {course} as {role}")


@cli.command("upload-assignments")
def upload_assignments(
    course: str = typer.Argument(..., help="Course name"),
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV or YAML file"),
    file_format: Optional[ListFormat] = typer.Option(
        None, "--format", help="File format; inferred from the extension when omitted"
    ),
) -> None:
    """Create or update a course's assignments from a CSV or YAML file."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    repository = CourseRepository(config)
    course_id = _find_course_id(repository, course)

    if file_format is None:
        suffix = source.suffix.lower().lstrip(".")
        file_format = ListFormat.YML if suffix in {"yml", "yaml"} else ListFormat.CSV

    try:
        result = AssignmentListService(repository).upload_assignment_list(
            course_id, file_format.value, source.read_text(encoding="utf-8")
        )
    except AssignmentListError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error

    if result["valid_lines"]:
        typer.echo(result["valid_lines"])
    if result["invalid_lines"]:
        typer.echo(result["invalid_lines"], err=True)


@cli.command("download-assignments")
def download_assignments(
    course: str = typer.Argument(..., help="Course name"),
    file_format: ListFormat = typer.Option(ListFormat.CSV, "--format", help="Output format"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file"),
) -> None:
    """Print or save a course's assignment list."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    repository = CourseRepository(config)
    content = AssignmentListService(repository).get_assignment_list(
        _find_course_id(repository, course), file_format.value
    )
    if output is None:
        typer.echo(content, nl=False)
    else:
        output.write_text(content, encoding="utf-8")
        typer.echo(f"Assignment list saved to: {output}")


@cli.command("export-students")
def export_students(
    course: str = typer.Argument(..., help="Course name"),
    file_format: ListFormat = typer.Option(ListFormat.CSV, "--format", help="Output format"),
) -> None:
    """Print the course's student roster."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    repository = CourseRepository(config)
    service = _course_service(repository, config)
    course_id = _find_course_id(repository, course)
    try:
        if file_format is ListFormat.CSV:
            content = service.export_student_data_csv(course_id)
        else:
            content = service.export_student_data_yml(course_id)
    except RecordNotFoundError as error:
        raise typer.BadParameter(str(error), param_hint="COURSE") from error
    typer.echo(content, nl=False)


@cli.command("public-jwk")
def public_jwk() -> None:
    """Print the tool's public JWK set, creating the signing key if needed."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    typer.echo(json.dumps(LtiKeyStore(config.lti.key_file).public_jwk_set(), indent=2))


if __name__ == "__main__":
    cli()
