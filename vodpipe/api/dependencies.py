"""
Request dependencies shared by the API routes.
"""

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from .app import Services


def get_services(request: Request) -> "Services":
    """The Services wired into the running app."""
    return request.app.state.services
