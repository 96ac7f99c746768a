"""
Request-scoped access to the process-wide ServiceContainer.
"""

from __future__ import annotations

from fastapi import Request

from backend.app.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
