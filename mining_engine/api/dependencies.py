"""
API dependencies for FastAPI endpoints.
"""

from fastapi import Request

from mining_engine.core.exceptions import ConfigurationError
from mining_engine.engine import MiningEngine


def get_engine(request: Request) -> MiningEngine:
    """The engine assembled during application startup."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise ConfigurationError("Mining engine is not initialized")
    return engine
