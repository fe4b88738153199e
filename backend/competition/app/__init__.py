"""FastAPI application package for the trading competition backend."""

from .logging import setup_logging

setup_logging()

__all__ = ["setup_logging"]
