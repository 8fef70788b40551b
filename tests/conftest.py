"""
Shared test configuration and fixtures.

Provides temporary store paths, a seeded document matching the storefront
data, and an in-memory transport that stands in for a WebSocket.
"""

import json
import tempfile
from pathlib import Path
from typing import Any

import pytest

from inventory_sync.store import InventoryStore

SEED_DOCUMENT: dict[str, Any] = {
    "inventory": [
        {
            "id": "inv_1_1",
            "modelId": "1",
            "colorName": "Pearl White",
            "colorHex": "#F5F5F0",
            "quantity": 5,
            "isAvailable": True,
            "lastUpdated": "2025-11-01T08:00:00+00:00",
        },
        {
            "id": "inv_1_2",
            "modelId": "1",
            "colorName": "Matte Black",
            "colorHex": "#1C1C1C",
            "quantity": 0,
            "isAvailable": True,
            "lastUpdated": "2025-11-01T08:00:00+00:00",
        },
        {
            "id": "inv_21_1",
            "modelId": "21",
            "colorName": "Tricolor",
            "colorHex": "#C8102E",
            "quantity": 3,
            "isAvailable": False,
            "lastUpdated": "2025-11-01T08:00:00+00:00",
        },
    ],
    "promos": [
        {
            "id": "promo_winner",
            "modelIds": ["21", "22"],
            "title": "Winner X Mega Promo",
            "description": "Free registration",
            "freebies": ["LTO Registration"],
            "startDate": "2025-11-03T00:00:00+00:00",
            "endDate": "2025-12-31T00:00:00+00:00",
            "isActive": True,
        }
    ],
}


class FakeTransport:
    """In-memory WebSocket double that records what the hub sends."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.fail = fail
        self.pings = 0
        self.close_code: int | None = None

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionResetError("connection reset by peer")
        self.sent.append(data)

    async def ping(self, message: bytes = b"") -> None:
        self.pings += 1

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        self.closed = True
        self.close_code = code
        return True

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == message_type]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir):
    return temp_dir / "data" / "inventory.json"


@pytest.fixture
def seeded_db_path(db_path):
    """Store path pre-populated with the seed document."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_path.write_text(json.dumps(SEED_DOCUMENT))
    return db_path


@pytest.fixture
def store(db_path):
    return InventoryStore(db_path)


@pytest.fixture
def seeded_store(seeded_db_path):
    return InventoryStore(seeded_db_path)
