"""
Shared FastAPI dependencies.
"""

from fastapi import HTTPException, Request

from leadlink.services.engine import AttributionEngine


def get_engine(request: Request) -> AttributionEngine:
    """The attribution engine owned by the running application."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return engine
