"""Configuration loading utilities for the Course Manager application."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".course_manager_write_check"
_REPOSITORY_TYPES = ("git", "mem")
_DEFAULT_MAX_FILE_SIZE = 5_000_000
SESSION_SECRET_ENV = "COURSE_MANAGER_SESSION_SECRET"


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. The returned flag tells whether a
    fallback was used. When nothing can be prepared the original
    ``preferred`` path is returned so the bootstrapper can report it.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class LtiSettings:
    """LTI 1.3 tool settings."""

    key_file: Path
    tool_title: str = "Course Manager"
    tool_description: str = ""
    authorize_path: str = "/api/lti/authorize_redirect"
    jwks_path: str = "/api/lti/security/jwks"
    platform_hosts: Tuple[str, ...] = ()

    @classmethod
    def from_mapping(
        cls, mapping: Dict[str, Any], *, base_path: Path, storage_root: Path
    ) -> "LtiSettings":
        raw_key = mapping.get("key_file")
        key_file = (
            (base_path / raw_key).resolve() if raw_key else storage_root / "lti" / "key.pem"
        )
        hosts = tuple(
            str(host).rstrip("/") for host in mapping.get("platform_hosts", ()) if host
        )
        return cls(
            key_file=key_file,
            tool_title=str(mapping.get("tool_title", cls.tool_title)),
            tool_description=str(mapping.get("tool_description", "")),
            authorize_path=str(mapping.get("authorize_path", cls.authorize_path)),
            jwks_path=str(mapping.get("jwks_path", cls.jwks_path)),
            platform_hosts=hosts,
        )


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and settings for the application."""

    storage_root: Path
    database_file: Path
    assets_root: Path
    repository_type: str = "git"
    default_max_file_size: int = _DEFAULT_MAX_FILE_SIZE
    session_secret: str = "change-me"
    lti: LtiSettings = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.lti is None:
            object.__setattr__(
                self, "lti", LtiSettings(key_file=self.storage_root / "lti" / "key.pem")
            )

    @property
    def archive_root(self) -> Path:
        """Location used for temporary export archives."""

        return (self.storage_root / "_archives").resolve()

    @property
    def repositories_root(self) -> Path:
        """Parent directory of every course's student repositories."""

        return (self.storage_root / "repositories").resolve()

    @property
    def exam_templates_root(self) -> Path:
        return (self.assets_root / "exam_templates").resolve()

    @property
    def uses_git_repositories(self) -> bool:
        return self.repository_type == "git"

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".course_manager" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        preferred_assets = (base_path / mapping["assets_root"]).resolve()
        assets_root, _ = _select_writable_directory(
            preferred_assets,
            label="assets",
            fallbacks=(storage_root / "_assets",),
        )

        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        repository_type = str(mapping.get("repository_type", "git")).strip().lower()
        if repository_type not in _REPOSITORY_TYPES:
            LOGGER.warning(
                "Unknown repository type '%s'; falling back to 'mem'.", repository_type
            )
            repository_type = "mem"

        try:
            default_max_file_size = int(
                mapping.get("default_max_file_size", _DEFAULT_MAX_FILE_SIZE)
            )
        except (TypeError, ValueError):
            default_max_file_size = _DEFAULT_MAX_FILE_SIZE

        session_secret = (
            os.environ.get(SESSION_SECRET_ENV, "").strip()
            or str(mapping.get("session_secret", "change-me"))
        )

        lti = LtiSettings.from_mapping(
            mapping.get("lti") or {}, base_path=base_path, storage_root=storage_root
        )

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            assets_root=assets_root,
            repository_type=repository_type,
            default_max_file_size=max(default_max_file_size, 0),
            session_secret=session_secret,
            lti=lti,
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "LtiSettings", "load_config"]
