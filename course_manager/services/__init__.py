"""Service layer utilities for the Course Manager application."""

from .storage import CourseRepository

__all__ = ["CourseRepository"]
