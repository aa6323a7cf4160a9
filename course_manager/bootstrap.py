"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import shutil
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_name TEXT NOT NULL UNIQUE,
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    email TEXT,
    id_number TEXT,
    type TEXT NOT NULL DEFAULT 'EndUser' CHECK(type IN ('EndUser', 'AdminUser'))
);

CREATE TABLE IF NOT EXISTS autotest_settings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    api_key TEXT NOT NULL,
    schema TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS courses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL,
    is_hidden INTEGER NOT NULL DEFAULT 1,
    max_file_size INTEGER NOT NULL DEFAULT 5000000 CHECK(max_file_size >= 0),
    autotest_setting_id INTEGER,
    FOREIGN KEY(autotest_setting_id) REFERENCES autotest_settings(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS sections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    UNIQUE(course_id, name),
    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS roles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    course_id INTEGER NOT NULL,
    type TEXT NOT NULL CHECK(type IN ('Instructor', 'Ta', 'Student', 'AdminRole')),
    section_id INTEGER,
    hidden INTEGER NOT NULL DEFAULT 0,
    UNIQUE(user_id, course_id),
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE CASCADE,
    FOREIGN KEY(section_id) REFERENCES sections(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS assignments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL,
    short_identifier TEXT NOT NULL,
    description TEXT NOT NULL,
    message TEXT,
    due_date TEXT NOT NULL,
    is_hidden INTEGER NOT NULL DEFAULT 1,
    UNIQUE(course_id, short_identifier),
    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS assignment_properties (
    assignment_id INTEGER PRIMARY KEY,
    repository_folder TEXT NOT NULL,
    token_period REAL,
    unlimited_tokens INTEGER NOT NULL DEFAULT 0,
    scanned_exam INTEGER NOT NULL DEFAULT 0,
    only_required_files INTEGER NOT NULL DEFAULT 0,
    remote_autotest_settings_id INTEGER,
    group_min INTEGER NOT NULL DEFAULT 1,
    group_max INTEGER NOT NULL DEFAULT 1,
    tokens_per_period INTEGER NOT NULL DEFAULT 0,
    allow_web_submits INTEGER NOT NULL DEFAULT 1,
    student_form_groups INTEGER NOT NULL DEFAULT 0,
    remark_due_date TEXT,
    remark_message TEXT,
    assign_graders_to_criteria INTEGER NOT NULL DEFAULT 0,
    enable_test INTEGER NOT NULL DEFAULT 0,
    enable_student_tests INTEGER NOT NULL DEFAULT 0,
    allow_remarks INTEGER NOT NULL DEFAULT 0,
    display_grader_names_to_students INTEGER NOT NULL DEFAULT 0,
    display_median_to_students INTEGER NOT NULL DEFAULT 0,
    group_name_autogenerated INTEGER NOT NULL DEFAULT 1,
    vcs_submit INTEGER NOT NULL DEFAULT 0,
    has_peer_review INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY(assignment_id) REFERENCES assignments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS assignment_files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    assignment_id INTEGER NOT NULL,
    filename TEXT NOT NULL,
    UNIQUE(assignment_id, filename),
    FOREIGN KEY(assignment_id) REFERENCES assignments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS lti_clients (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id TEXT NOT NULL,
    host TEXT NOT NULL,
    UNIQUE(client_id, host)
);

CREATE TABLE IF NOT EXISTS lti_deployments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lti_client_id INTEGER NOT NULL,
    external_deployment_id TEXT NOT NULL,
    course_id INTEGER,
    lms_course_name TEXT,
    lms_course_id TEXT,
    UNIQUE(lti_client_id, external_deployment_id),
    FOREIGN KEY(lti_client_id) REFERENCES lti_clients(id) ON DELETE CASCADE,
    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS exam_templates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    assignment_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    filename TEXT NOT NULL,
    num_pages INTEGER NOT NULL,
    automatic_parsing INTEGER NOT NULL DEFAULT 0,
    cover_x REAL,
    cover_y REAL,
    cover_width REAL,
    cover_height REAL,
    UNIQUE(assignment_id, name),
    FOREIGN KEY(assignment_id) REFERENCES assignments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS template_divisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    exam_template_id INTEGER NOT NULL,
    label TEXT NOT NULL,
    start_page INTEGER NOT NULL,
    end_page INTEGER NOT NULL,
    assignment_file_id INTEGER,
    UNIQUE(exam_template_id, label),
    FOREIGN KEY(exam_template_id) REFERENCES exam_templates(id) ON DELETE CASCADE,
    FOREIGN KEY(assignment_file_id) REFERENCES assignment_files(id) ON DELETE SET NULL
);
"""


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        required = (
            ("storage", self._config.storage_root),
            ("assets", self._config.assets_root),
            ("repositories", self._config.repositories_root),
            ("exam template", self._config.exam_templates_root),
            ("database", self._config.database_file.parent),
        )
        for label, path in required:
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(f"The {label} directory '{path}' is not writable")
            LOGGER.debug("Ensured directory exists: %s", path)

        archive_root = self._config.archive_root
        archive_root.mkdir(parents=True, exist_ok=True)
        for child in archive_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove archive %s: %s", child, error)
        LOGGER.debug("Cleared archive directory: %s", archive_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Could not open database '{self._config.database_file}': {error}"
            ) from error
        try:
            connection.executescript(SCHEMA)
            connection.commit()
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "SCHEMA", "initialize_app"]
