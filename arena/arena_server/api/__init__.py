"""
API module for Arena Server.

Thin HTTP layer (FastAPI) over the backup service: snapshot export,
listing, download and import; whole-system archive download and restore;
read-only entity listings.
"""

from .app import create_app, status_for

__all__ = ["create_app", "status_for"]
