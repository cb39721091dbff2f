"""
asgi.py -- ASGI entry point for Forge.

Kept separate from api/main.py so process managers have one stable import
path, and so api/main.py can be imported by tests without side effects
beyond building the app object.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
