"""Naming helpers for stored files and download attachments."""

from __future__ import annotations

from datetime import datetime
import re
from typing import Optional

__all__ = [
    "slugify",
    "build_asset_stem",
    "build_download_name",
    "build_timestamped_name",
]


def slugify(value: str) -> str:
    """Return a filesystem-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def build_asset_stem(*parts: str) -> str:
    """Return a slugified stem joined from the provided *parts*."""

    cleaned = [slugify(part) for part in parts if part]
    return "-".join(cleaned) if cleaned else "item"


def build_timestamped_name(
    stem: str,
    *,
    timestamp: Optional[str] = None,
    extension: str = "",
) -> str:
    """Return ``<stem>-<timestamp><extension>``."""

    stamp = timestamp or datetime.now().strftime("%Y%m%d-%H%M%S")
    suffix = ""
    if extension:
        suffix = extension if extension.startswith(".") else f".{extension}"
        suffix = suffix.lower()
    return f"{stem or 'item'}-{stamp}{suffix}"


def build_download_name(course_name: str, kind: str, file_format: str) -> str:
    """Return the attachment name used for course exports, e.g. ``csc108-assignments.csv``."""

    return f"{build_asset_stem(course_name, kind)}.{file_format.lower()}"
