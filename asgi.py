"""
asgi.py -- Application assembly for FloraOps.

The import target for ASGI servers. api/main.py builds the app; this module
only re-exports it so deployment configuration never points into a package.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from api.main import app

__all__ = ["app"]
