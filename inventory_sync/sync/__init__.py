"""
Real-time sync module.

Provides the hub that persists and broadcasts inventory changes over
WebSocket, its aiohttp HTTP surface, and the client agent that keeps a
local copy in sync.
"""

from .agent import DataSource, InventorySyncAgent, PendingMutation
from .auth import TokenSigner, build_auth_validator, check_credentials
from .envelope import Envelope, make_message, sign_data, verify_signature
from .hub import HubSession, InventoryHub, SessionState
from .server import create_app

__all__ = [
    "InventoryHub",
    "HubSession",
    "SessionState",
    "create_app",
    "InventorySyncAgent",
    "DataSource",
    "PendingMutation",
    "Envelope",
    "make_message",
    "sign_data",
    "verify_signature",
    "TokenSigner",
    "build_auth_validator",
    "check_credentials",
]
