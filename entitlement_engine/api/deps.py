"""Shared FastAPI dependencies."""

from typing import Optional

from fastapi import Header, Request

from entitlement_engine.engine import GovernanceEngine


def get_engine(request: Request) -> GovernanceEngine:
    """The engine built by create_app, kept on app.state."""
    return request.app.state.engine


def get_actor(x_actor: Optional[str] = Header(None)) -> Optional[str]:
    """Caller identity recorded on audit rows. Authorization happens upstream."""
    return x_actor
