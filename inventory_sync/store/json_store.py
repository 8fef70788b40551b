"""
Single-file JSON store for inventory and promos.

The store is the only writer of the document on disk. Every mutation is a
load-modify-save cycle held under one asyncio lock, so concurrent callers are
applied one at a time in arrival order and no update is lost. Writes go
through ``<path>.tmp`` and an atomic rename, so readers never need the lock.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from ..exceptions import RecordValidationError, StoreIOError
from ..models import (
    InventoryDocument,
    InventoryItem,
    Promo,
    merge_records,
    new_promo_id,
    validate_inventory_patch,
    validate_promo_patch,
)
from .file_ops import DEFAULT_FILE_MODE, read_json, write_json_atomic

logger = logging.getLogger(__name__)


class InventoryStore:
    """Durable record of inventory items and promos.

    Example:
        >>> store = InventoryStore(Path("data/inventory.json"))
        >>> await store.upsert_inventory_items({"id": "inv_1_1", "quantity": 5})
        >>> doc = await store.load()
    """

    def __init__(self, path: Path | str, file_mode: int = DEFAULT_FILE_MODE) -> None:
        """Initialize the store.

        Args:
            path: Location of the JSON document
            file_mode: Permission bits for the written file
        """
        self.path = Path(path)
        self.file_mode = file_mode
        self._write_lock = asyncio.Lock()
        self._write_count = 0

    @property
    def write_count(self) -> int:
        """Number of completed writes since the store was created."""
        return self._write_count

    async def load(self) -> InventoryDocument:
        """Read the document, falling back to an empty one.

        A missing file, unparseable JSON or any I/O failure yields the empty
        document, so callers always have a usable state.
        """
        try:
            return await self.read()
        except StoreIOError as e:
            logger.warning(f"Falling back to empty document: {e.message} ({e.details.get('cause')})")
            return InventoryDocument.empty()

    async def read(self) -> InventoryDocument:
        """Read the document, raising on I/O or parse failure.

        Raises:
            StoreIOError: If the file exists but cannot be read or parsed
        """
        return InventoryDocument.from_dict(await self._read_raw())

    async def load_inventory(self) -> list[InventoryItem]:
        return (await self.load()).inventory

    async def load_promos(self) -> list[Promo]:
        return (await self.load()).promos

    async def save(self, document: InventoryDocument) -> None:
        """Write the full document atomically.

        Overlapping calls queue on the write lock; each finishes its
        temp-write and rename before the next one starts.

        Raises:
            StoreIOError: If the write fails; the previous file is left intact
        """
        async with self._write_lock:
            await self._write_raw(document.to_dict())

    async def upsert_inventory_items(
        self, items: dict[str, Any] | list[dict[str, Any]]
    ) -> list[InventoryItem]:
        """Merge one item or a batch into the inventory by id.

        Fields present on an existing item are replaced, absent fields are
        kept, unknown ids are appended. Setting ``quantity`` refreshes
        ``lastUpdated``. The whole batch is one load-modify-save cycle.

        Returns:
            The full inventory after the write

        Raises:
            RecordValidationError: If any item is invalid (nothing is written)
            StoreIOError: If the document cannot be read or written
        """
        patches = items if isinstance(items, list) else [items]
        if not patches:
            raise RecordValidationError("inventory", "must contain at least one item")
        for patch in patches:
            validate_inventory_patch(patch)

        async with self._write_lock:
            raw = await self._read_raw()
            raw["inventory"] = merge_records(raw["inventory"], patches, touch_quantity=True)
            await self._write_raw(raw)

        logger.debug(f"Upserted {len(patches)} inventory item(s)")
        return InventoryDocument.from_dict(raw).inventory

    async def delete_inventory_item(self, item_id: str) -> list[InventoryItem]:
        """Remove an inventory item by id.

        Deleting an unknown id is not an error; the inventory is returned unchanged.
        """
        async with self._write_lock:
            raw = await self._read_raw()
            raw["inventory"] = [item for item in raw["inventory"] if item.get("id") != item_id]
            await self._write_raw(raw)
        return InventoryDocument.from_dict(raw).inventory

    async def upsert_promo(self, promo: dict[str, Any]) -> list[Promo]:
        """Merge a promo into the promo list by id.

        Returns:
            The full promo list after the write

        Raises:
            RecordValidationError: If the promo has no id or a field is invalid
            StoreIOError: If the document cannot be read or written
        """
        validate_promo_patch(promo)

        async with self._write_lock:
            raw = await self._read_raw()
            raw["promos"] = merge_records(raw["promos"], [promo])
            await self._write_raw(raw)

        return InventoryDocument.from_dict(raw).promos

    async def add_promo(self, promo: dict[str, Any]) -> Promo:
        """Create a promo, assigning an id when the payload has none.

        Returns:
            The stored promo
        """
        validate_promo_patch(promo, require_id=False)
        record = dict(promo)
        if not record.get("id"):
            record["id"] = new_promo_id()

        promos = await self.upsert_promo(record)
        return next(p for p in promos if p.id == record["id"])

    async def delete_promo(self, promo_id: str) -> list[Promo]:
        """Remove a promo by id.

        Deleting an unknown id is not an error; the promo list is returned unchanged.
        """
        async with self._write_lock:
            raw = await self._read_raw()
            raw["promos"] = [promo for promo in raw["promos"] if promo.get("id") != promo_id]
            await self._write_raw(raw)
        return InventoryDocument.from_dict(raw).promos

    async def _read_raw(self) -> dict[str, list[dict[str, Any]]]:
        """Read the stored records without type conversion.

        Working on the raw records keeps fields this version does not model.
        """
        data = await read_json(self.path)
        if not isinstance(data, dict):
            data = {}
        inventory = data.get("inventory")
        promos = data.get("promos")
        return {
            "inventory": [
                item for item in (inventory if isinstance(inventory, list) else [])
                if isinstance(item, dict)
            ],
            "promos": [
                promo for promo in (promos if isinstance(promos, list) else [])
                if isinstance(promo, dict)
            ],
        }

    async def _write_raw(self, raw: dict[str, Any]) -> None:
        # Caller holds the write lock
        await write_json_atomic(self.path, raw, mode=self.file_mode)
        self._write_count += 1
