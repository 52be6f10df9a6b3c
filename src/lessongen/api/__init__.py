"""API package for lesson generation."""

from lessongen.api.app import app, create_app
from lessongen.api.routes import router

__all__ = ["app", "create_app", "router"]
