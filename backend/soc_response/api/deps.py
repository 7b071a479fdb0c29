# backend/soc_response/api/deps.py
from fastapi import Request

from soc_response.services.engine import SecurityEngine


def get_engine(request: Request) -> SecurityEngine:
    """The engine built at startup lives on app.state."""
    return request.app.state.engine
