"""
Inventory and promotion records.

Records travel as camelCase JSON (the storefront's wire format) and are
stored the same way. Fields this module does not know about are kept in
``extra`` so older or newer clients never lose data on a round trip.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .exceptions import RecordValidationError

INVENTORY_FIELDS = (
    "id",
    "modelId",
    "colorName",
    "colorHex",
    "quantity",
    "isAvailable",
    "lastUpdated",
)

PROMO_FIELDS = (
    "id",
    "modelIds",
    "title",
    "description",
    "freebies",
    "startDate",
    "endDate",
    "isActive",
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string, epoch milliseconds or datetime.

    Naive values are taken to be UTC. Returns None for missing or
    unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        return None
    elif isinstance(value, int | float):
        try:
            parsed = datetime.fromtimestamp(value / 1000.0, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    """Serialize a datetime for the wire."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def new_promo_id() -> str:
    """Generate an id for a promo created without one."""
    return f"promo_{uuid.uuid4().hex[:12]}"


def _extra_fields(data: dict[str, Any], known: tuple[str, ...]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if key not in known}


@dataclass
class InventoryItem:
    """Stock of one color of one model.

    ``quantity`` and ``is_available`` are independent: an item can be
    available with zero stock (made to order) or hidden with stock left.
    Use ``is_sellable`` when both matter.

    Attributes:
        id: Opaque identifier shared by clients and server
        model_id: Product the item belongs to
        color_name: Display name of the color
        color_hex: CSS color value
        quantity: Units in stock (never negative)
        is_available: Whether the color is offered at all
        last_updated: When the quantity last changed
        extra: Fields not modelled here, preserved verbatim
    """

    id: str
    model_id: str = ""
    color_name: str = ""
    color_hex: str = ""
    quantity: int = 0
    is_available: bool = False
    last_updated: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_sellable(self) -> bool:
        return self.is_available and self.quantity > 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire format."""
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "modelId": self.model_id,
                "colorName": self.color_name,
                "colorHex": self.color_hex,
                "quantity": self.quantity,
                "isAvailable": self.is_available,
                "lastUpdated": format_timestamp(self.last_updated),
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InventoryItem:
        """Deserialize from the wire format, tolerating missing fields."""
        quantity = data.get("quantity", 0)
        return cls(
            id=str(data["id"]),
            model_id=str(data.get("modelId", "")),
            color_name=data.get("colorName", "") or "",
            color_hex=data.get("colorHex", "") or "",
            quantity=quantity if isinstance(quantity, int) and not isinstance(quantity, bool) else 0,
            is_available=bool(data.get("isAvailable", False)),
            last_updated=parse_timestamp(data.get("lastUpdated")),
            extra=_extra_fields(data, INVENTORY_FIELDS),
        )


@dataclass
class Promo:
    """A promotion attached to one or more models.

    Attributes:
        id: Opaque identifier
        model_ids: Models the promo applies to
        title: Headline shown on product cards
        description: Longer text
        freebies: Ordered list of included freebies
        start_date: First moment the promo runs
        end_date: Last moment the promo runs
        is_active: Manual on/off switch
        extra: Fields not modelled here, preserved verbatim
    """

    id: str
    model_ids: list[str] = field(default_factory=list)
    title: str = ""
    description: str = ""
    freebies: list[str] = field(default_factory=list)
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def is_active_for(self, model_id: str, now: datetime | None = None) -> bool:
        """Whether the promo currently applies to ``model_id``.

        A promo without a start or end date never counts as running.
        """
        if not self.is_active or model_id not in self.model_ids:
            return False
        if self.start_date is None or self.end_date is None:
            return False
        moment = now or utc_now()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return self.start_date <= moment <= self.end_date

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire format."""
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "modelIds": list(self.model_ids),
                "title": self.title,
                "description": self.description,
                "freebies": list(self.freebies),
                "startDate": format_timestamp(self.start_date),
                "endDate": format_timestamp(self.end_date),
                "isActive": self.is_active,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Promo:
        """Deserialize from the wire format, tolerating missing fields."""
        return cls(
            id=str(data["id"]),
            model_ids=[str(m) for m in data.get("modelIds") or []],
            title=data.get("title", "") or "",
            description=data.get("description", "") or "",
            freebies=[str(f) for f in data.get("freebies") or []],
            start_date=parse_timestamp(data.get("startDate")),
            end_date=parse_timestamp(data.get("endDate")),
            is_active=bool(data.get("isActive", False)),
            extra=_extra_fields(data, PROMO_FIELDS),
        )


@dataclass
class InventoryDocument:
    """The persisted unit: every inventory item and every promo."""

    inventory: list[InventoryItem] = field(default_factory=list)
    promos: list[Promo] = field(default_factory=list)

    @classmethod
    def empty(cls) -> InventoryDocument:
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {
            "inventory": [item.to_dict() for item in self.inventory],
            "promos": [promo.to_dict() for promo in self.promos],
        }

    @classmethod
    def from_dict(cls, data: Any) -> InventoryDocument:
        """Build a document from parsed JSON.

        Lists that are missing or of the wrong type become empty, and
        entries without an id are skipped, so any JSON value yields a
        usable document.
        """
        if not isinstance(data, dict):
            return cls()
        inventory = data.get("inventory")
        promos = data.get("promos")
        return cls(
            inventory=[
                InventoryItem.from_dict(item)
                for item in (inventory if isinstance(inventory, list) else [])
                if isinstance(item, dict) and item.get("id") not in (None, "")
            ],
            promos=[
                Promo.from_dict(promo)
                for promo in (promos if isinstance(promos, list) else [])
                if isinstance(promo, dict) and promo.get("id") not in (None, "")
            ],
        )


# Payload validation


def _require_id(payload: Any, kind: str) -> str:
    if not isinstance(payload, dict):
        raise RecordValidationError(kind, "must be a JSON object")
    record_id = payload.get("id")
    if not isinstance(record_id, str) or not record_id.strip():
        raise RecordValidationError(f"{kind}.id", "must be a non-empty string")
    return record_id


def validate_inventory_patch(payload: Any) -> dict[str, Any]:
    """Check a (possibly partial) inventory item before it is merged.

    Returns the payload unchanged when valid.

    Raises:
        RecordValidationError: If the id is missing or a typed field has the wrong type
    """
    _require_id(payload, "inventory")
    if "quantity" in payload:
        quantity = payload["quantity"]
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise RecordValidationError("inventory.quantity", "must be an integer", repr(quantity))
        if quantity < 0:
            raise RecordValidationError("inventory.quantity", "must not be negative", str(quantity))
    if "isAvailable" in payload and not isinstance(payload["isAvailable"], bool):
        raise RecordValidationError(
            "inventory.isAvailable", "must be a boolean", repr(payload["isAvailable"])
        )
    return payload


def validate_promo_patch(payload: Any, require_id: bool = True) -> dict[str, Any]:
    """Check a (possibly partial) promo before it is merged.

    Raises:
        RecordValidationError: If the id is missing (when required) or a field has the wrong type
    """
    if require_id:
        _require_id(payload, "promo")
    elif not isinstance(payload, dict):
        raise RecordValidationError("promo", "must be a JSON object")
    for list_field in ("modelIds", "freebies"):
        if list_field in payload and not isinstance(payload[list_field], list):
            raise RecordValidationError(f"promo.{list_field}", "must be a list")
    if "isActive" in payload and not isinstance(payload["isActive"], bool):
        raise RecordValidationError("promo.isActive", "must be a boolean", repr(payload["isActive"]))
    for date_field in ("startDate", "endDate"):
        value = payload.get(date_field)
        if value not in (None, "") and parse_timestamp(value) is None:
            raise RecordValidationError(f"promo.{date_field}", "must be a timestamp", repr(value))
    return payload


def merge_records(
    records: list[dict[str, Any]],
    patches: list[dict[str, Any]],
    touch_quantity: bool = False,
) -> list[dict[str, Any]]:
    """Merge patches into records by id (shallow merge, append when absent).

    Args:
        records: Existing records in stored order
        patches: Validated patches, applied in order
        touch_quantity: Refresh ``lastUpdated`` on patches that set ``quantity``

    Returns:
        A new list; the input lists are not modified
    """
    merged = [dict(record) for record in records]
    index = {record.get("id"): position for position, record in enumerate(merged)}
    for patch in patches:
        update = dict(patch)
        if touch_quantity and "quantity" in update:
            update["lastUpdated"] = format_timestamp(utc_now())
        position = index.get(update["id"])
        if position is None:
            index[update["id"]] = len(merged)
            merged.append(update)
        else:
            merged[position] = {**merged[position], **update}
    return merged
