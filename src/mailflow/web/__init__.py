"""HTTP service for mailflow.

Provides a FastAPI application exposing:
- Health check
- Automation stats and manual sweep
- Cart heartbeat intake
- Automation scheduling and cancellation
"""

from mailflow.web.app import create_app

__all__ = ["create_app"]
