"""HTTP API for the CRM workflow engine."""

from .endpoints import router, init_dependencies

__all__ = ["router", "init_dependencies"]
