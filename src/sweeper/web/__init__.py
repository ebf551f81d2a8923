"""JSON API for Mail Sweeper.

Provides a FastAPI application for:
- Starting scans and driving them batch by batch
- Reviewing suggested actions
- Executing, rejecting and undoing actions
"""

from sweeper.web.app import create_app

__all__ = ["create_app"]
