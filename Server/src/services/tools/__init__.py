"""
MCP tools for character generation.

Importing this package registers every tool module with the registry.
Tools reach the server's shared components through the ForgeState bound
by the server at startup.
"""

from dataclasses import dataclass
from typing import Optional

from integrations.meshy_client import MeshyClient
from services.config import ForgeConfig
from services.gallery import Gallery
from services.sessions import SessionManager


@dataclass
class ForgeState:
    """Components shared between the HTTP routes and the MCP tools."""
    config: ForgeConfig
    gallery: Gallery
    sessions: Optional[SessionManager] = None
    client: Optional[MeshyClient] = None


_state: Optional[ForgeState] = None


def bind_state(state: Optional[ForgeState]) -> None:
    """Bind (or with None, unbind) the components the tools operate on."""
    global _state
    _state = state


def get_state() -> ForgeState:
    """Return the ForgeState bound by the server for this process."""
    if _state is None:
        raise RuntimeError("Server state is not bound; call bind_state() at startup")
    return _state


from . import generate_character  # noqa: E402,F401

__all__ = [
    "ForgeState",
    "bind_state",
    "get_state",
]
