"""
dependencies.py — Shared FastAPI dependencies

Business Rules:
- require_api_key is a no-op when API_KEY is unset (local development)
- Otherwise the X-API-Key header must match exactly, else 401

Called by: routers/sync.py
Depends on: config
"""

import secrets

from fastapi import Header, HTTPException

from .config import settings


def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Dependency: raises 401 unless the X-API-Key header matches settings.api_key."""
    if not settings.api_key:
        return
    if not x_api_key or not secrets.compare_digest(x_api_key, settings.api_key):
        raise HTTPException(401, "Invalid or missing API key")
