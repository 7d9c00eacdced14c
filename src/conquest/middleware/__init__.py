"""Middleware registration."""

from fastapi import FastAPI

from conquest.config import Settings
from conquest.logging_config import setup_logging
from conquest.middleware.error_handler import setup_error_handlers
from conquest.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register logging, error handlers and the request id middleware."""
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(RequestIdMiddleware)
