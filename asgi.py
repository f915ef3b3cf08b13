"""
asgi.py -- Application assembly for FileGate.

The ASGI entry point servers import. api/main.py builds the app; this module
is the single place a deployment points at, so the app can later be wrapped
or extended without touching the API layer.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
