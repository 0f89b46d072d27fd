"""
FastAPI route modules for the TechAnal engine.
"""

from techanal_engine.api.ai_routes import router as ai_router
from techanal_engine.api.diagnostics_routes import router as diagnostics_router
from techanal_engine.api.performance_routes import router as performance_router
from techanal_engine.api.system_routes import logs_router
from techanal_engine.api.system_routes import router as system_router

__all__ = ["ai_router", "diagnostics_router", "logs_router", "performance_router", "system_router"]
