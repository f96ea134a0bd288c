"""
asgi.py -- Application assembly for pcompass-auth.

The deployable entry point. api/main.py builds the app; this module is what
the server imports so deployment config never names an internal package.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
