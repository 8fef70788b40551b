"""
Tests for inventory and promo records, timestamp handling and patch validation.
"""

from datetime import UTC, datetime

import pytest

from inventory_sync.exceptions import RecordValidationError
from inventory_sync.models import (
    InventoryDocument,
    InventoryItem,
    Promo,
    merge_records,
    new_promo_id,
    parse_timestamp,
    validate_inventory_patch,
    validate_promo_patch,
)


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_iso_with_z_suffix(self):
        assert parse_timestamp("2025-11-03T08:00:00Z") == datetime(2025, 11, 3, 8, tzinfo=UTC)

    def test_naive_string_is_utc(self):
        parsed = parse_timestamp("2025-11-03T08:00:00")
        assert parsed.tzinfo is not None
        assert parsed == datetime(2025, 11, 3, 8, tzinfo=UTC)

    def test_epoch_milliseconds(self):
        assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=UTC)

    def test_unparseable_values(self):
        assert parse_timestamp("not a date") is None
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(True) is None


class TestInventoryItem:
    """Tests for InventoryItem."""

    def test_from_dict_keeps_unknown_fields(self):
        """Fields the model does not know survive a round trip."""
        item = InventoryItem.from_dict({"id": "inv_1_1", "quantity": 2, "sku": "WX-150"})
        assert item.extra == {"sku": "WX-150"}
        assert item.to_dict()["sku"] == "WX-150"

    def test_missing_fields_default(self):
        item = InventoryItem.from_dict({"id": "inv_9"})
        assert item.quantity == 0
        assert item.is_available is False
        assert item.last_updated is None

    def test_is_sellable_needs_stock_and_availability(self):
        assert InventoryItem(id="a", quantity=1, is_available=True).is_sellable
        assert not InventoryItem(id="b", quantity=0, is_available=True).is_sellable
        assert not InventoryItem(id="c", quantity=4, is_available=False).is_sellable


class TestPromo:
    """Active promo query honors flag, model membership and the date window."""

    NOW = datetime(2025, 11, 15, tzinfo=UTC)

    def make_promo(self, **overrides):
        data = {
            "id": "p1",
            "modelIds": ["21"],
            "startDate": "2025-11-01T00:00:00Z",
            "endDate": "2025-11-30T00:00:00Z",
            "isActive": True,
        }
        data.update(overrides)
        return Promo.from_dict(data)

    def test_active_when_all_conditions_hold(self):
        assert self.make_promo().is_active_for("21", self.NOW)

    def test_inactive_flag(self):
        assert not self.make_promo(isActive=False).is_active_for("21", self.NOW)

    def test_other_model(self):
        assert not self.make_promo().is_active_for("22", self.NOW)

    def test_not_started(self):
        assert not self.make_promo(startDate="2025-11-20T00:00:00Z").is_active_for("21", self.NOW)

    def test_already_ended(self):
        assert not self.make_promo(endDate="2025-11-10T00:00:00Z").is_active_for("21", self.NOW)

    def test_missing_dates_never_active(self):
        assert not self.make_promo(endDate=None).is_active_for("21", self.NOW)

    def test_new_promo_id_format(self):
        promo_id = new_promo_id()
        assert promo_id.startswith("promo_")
        assert promo_id != new_promo_id()


class TestInventoryDocument:
    """Tests for InventoryDocument.from_dict leniency."""

    def test_non_object_yields_empty(self):
        assert InventoryDocument.from_dict([1, 2]) == InventoryDocument.empty()

    def test_skips_records_without_id(self):
        document = InventoryDocument.from_dict(
            {"inventory": [{"quantity": 1}, {"id": "inv_1"}], "promos": "bad"}
        )
        assert [item.id for item in document.inventory] == ["inv_1"]
        assert document.promos == []


class TestValidation:
    """Tests for patch validation."""

    @pytest.mark.parametrize(
        "payload",
        [
            {"quantity": 1},
            {"id": "", "quantity": 1},
            {"id": "inv_1", "quantity": -1},
            {"id": "inv_1", "quantity": 1.5},
            {"id": "inv_1", "quantity": True},
            {"id": "inv_1", "isAvailable": "yes"},
            "inv_1",
        ],
    )
    def test_invalid_inventory_patch(self, payload):
        with pytest.raises(RecordValidationError):
            validate_inventory_patch(payload)

    def test_valid_partial_inventory_patch(self):
        patch = {"id": "inv_1", "quantity": 0}
        assert validate_inventory_patch(patch) is patch

    def test_promo_requires_id_by_default(self):
        with pytest.raises(RecordValidationError) as exc_info:
            validate_promo_patch({"title": "Sale"})
        assert exc_info.value.field == "promo.id"

    def test_promo_without_id_allowed_for_add(self):
        validate_promo_patch({"title": "Sale"}, require_id=False)

    def test_promo_bad_date(self):
        with pytest.raises(RecordValidationError):
            validate_promo_patch({"id": "p1", "startDate": "someday"})


class TestMergeRecords:
    """Tests for merge_records upsert semantics."""

    def test_merge_preserves_absent_fields(self):
        records = [{"id": "inv_1", "colorName": "Red", "quantity": 5}]
        merged = merge_records(records, [{"id": "inv_1", "quantity": 0}])
        assert merged == [{"id": "inv_1", "colorName": "Red", "quantity": 0}]

    def test_unknown_id_is_appended(self):
        merged = merge_records([{"id": "a"}], [{"id": "b"}, {"id": "b", "x": 1}])
        assert merged == [{"id": "a"}, {"id": "b", "x": 1}]

    def test_inputs_not_modified(self):
        records = [{"id": "a", "quantity": 1}]
        merge_records(records, [{"id": "a", "quantity": 2}])
        assert records == [{"id": "a", "quantity": 1}]

    def test_touch_quantity_sets_last_updated(self):
        merged = merge_records([{"id": "a"}], [{"id": "a", "quantity": 3}], touch_quantity=True)
        assert parse_timestamp(merged[0]["lastUpdated"]) is not None
