# src/flowcore/api/__init__.py
"""
API layer for flowcore (FastAPI).

- app: FastAPI instance + lifespan wiring of the engine
- routes: REST endpoints
- deps: dependency injection helpers
"""

from .app import app

__all__ = ["app"]
