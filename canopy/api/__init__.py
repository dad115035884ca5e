"""FastAPI HTTP layer package.

Public re-export so callers can write::

    from canopy.api import app

    uvicorn canopy.api:app --reload
"""

from canopy.api.app import app

__all__ = ["app"]
