# src/btq/api/__init__.py
"""
API layer for BTQ (FastAPI).

- app: app factory + lifespan wiring of queue, pool and sweeper
- routes: REST endpoints
- deps: dependency injection helpers
"""

from .app import app, create_app

__all__ = ["app", "create_app"]
