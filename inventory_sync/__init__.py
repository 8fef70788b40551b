"""
Inventory Sync

Realtime inventory and promotion sync for a storefront.

Provides:
- A single-writer JSON store with atomic file replacement
- A hub that persists mutations and broadcasts them over WebSocket
- A client agent with optimistic updates, reconnect and HTTP fallback

Usage:

    >>> from inventory_sync import HubConfig, InventoryHub, InventoryStore, create_app
    >>> config = HubConfig.from_environment()
    >>> hub = InventoryHub(InventoryStore(config.db_path), config)
    >>> web.run_app(create_app(hub, config), host=config.host, port=config.port)

Client side:

    >>> from inventory_sync import AgentConfig, InventorySyncAgent
    >>> agent = InventorySyncAgent(AgentConfig(api_base="http://localhost:8081"))
    >>> await agent.load_initial()
    >>> await agent.start()
    >>> agent.available_colors("21")
"""

from .config import AgentConfig, HubConfig

# Exceptions
from .exceptions import (
    AuthenticationError,
    ConnectionLimitError,
    EnvelopeError,
    HubConnectionError,
    HubRequestError,
    InventorySyncError,
    RecordValidationError,
    StoreIOError,
    StoreTimeoutError,
)
from .models import InventoryDocument, InventoryItem, Promo
from .store import InventoryStore
from .sync import (
    DataSource,
    InventoryHub,
    InventorySyncAgent,
    TokenSigner,
    create_app,
)

__all__ = [
    # Configuration
    "HubConfig",
    "AgentConfig",
    # Records
    "InventoryItem",
    "Promo",
    "InventoryDocument",
    # Store
    "InventoryStore",
    # Sync
    "InventoryHub",
    "create_app",
    "InventorySyncAgent",
    "DataSource",
    "TokenSigner",
    # Exceptions
    "InventorySyncError",
    "StoreIOError",
    "StoreTimeoutError",
    "RecordValidationError",
    "EnvelopeError",
    "AuthenticationError",
    "HubConnectionError",
    "HubRequestError",
    "ConnectionLimitError",
]

__version__ = "0.1.0"
