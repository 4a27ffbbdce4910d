"""Installable entry package for the unicat catalog aggregator.

The service itself lives in :mod:`app`; this package re-exports the ASGI
application so ``uvicorn unicat:app`` and ``python -m unicat`` both work.
"""

from __future__ import annotations

from app.main import app, create_app

__version__ = "1.0.0"

__all__ = ["__version__", "app", "create_app"]
