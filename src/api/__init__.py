"""
Stream Meter - API Module

FastAPI session control surface:
- Session lifecycle (start, stop, reset)
- Checkpoint and recovery
- Settlement and audit trail
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
