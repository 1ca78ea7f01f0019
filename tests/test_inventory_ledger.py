"""
Tests for the per-unit reservation ledger and stock items.
"""
from decimal import Decimal

import pytest
from sqlalchemy import update

from dealerdesk.core.exceptions import ConflictError, InsufficientStockError, NotFoundError
from dealerdesk.models import StockStatus, UnitRecord, UnitStatus
from dealerdesk.schemas import StockItemUpdate
from dealerdesk.services.inventory_service import InventoryLedger, StockItemService, merge_requests

from tests.conftest import VINS, make_stock_item


def unit_statuses(db, stock_item):
    db.expire_all()
    return {u.chassis_number: u.status for u in stock_item.units}


class TestStockItems:
    def test_quantity_counts_chassis_numbers(self, stock_item):
        assert stock_item.quantity == 5
        assert stock_item.is_serialized
        assert stock_item.status == StockStatus.ACTIVE.value
        assert [u.status for u in stock_item.units] == [UnitStatus.ACTIVE.value] * 5

    def test_parts_keep_given_quantity(self, db):
        item = make_stock_item(db, sku="FLT-OIL-90915", chassis_numbers=[], item_type="part",
                               name="Oil filter", quantity=40)
        assert item.quantity == 40
        assert not item.is_serialized

    def test_duplicate_sku_rejected(self, db, stock_item):
        with pytest.raises(ConflictError):
            make_stock_item(db, chassis_numbers=["OTHER-VIN-1"])

    def test_registered_chassis_rejected(self, db, stock_item):
        with pytest.raises(ConflictError):
            make_stock_item(db, sku="LC300-2024-BLK", chassis_numbers=[VINS[0]])

    def test_get_unknown_item(self, db):
        with pytest.raises(NotFoundError):
            StockItemService(db).get(424242)

    def test_update_leaves_quantity_alone(self, db, stock_item):
        updated = StockItemService(db).update(
            stock_item.id, StockItemUpdate(cost_price=Decimal("9500"), currency="usd")
        )
        assert updated.cost_price == Decimal("9500")
        assert updated.currency == "USD"
        assert updated.quantity == 5

    def test_catalog_lists_only_active_units(self, db, stock_item, currency_service):
        InventoryLedger(db).reserve(stock_item.id, VINS[:2])
        catalog = StockItemService(db).list_catalog(currency_service)
        assert catalog[0]["chassis_numbers"] == VINS[2:]
        assert catalog[0]["quantity"] == 3

    def test_catalog_priced_in_other_currency(self, db, stock_item, currency_service):
        catalog = StockItemService(db).list_catalog(currency_service, "USD")
        assert catalog[0]["currency"] == "USD"
        assert catalog[0]["selling_price"] == Decimal("3267.53")


class TestReserveAndRelease:
    def test_reserve_holds_units_and_takes_quantity(self, db, stock_item):
        result = InventoryLedger(db).reserve(stock_item.id, VINS[:2])

        assert result.ok
        assert result.reserved == {stock_item.id: VINS[:2]}
        assert stock_item.quantity == 3
        statuses = unit_statuses(db, stock_item)
        assert statuses[VINS[0]] == UnitStatus.HOLD.value
        assert statuses[VINS[1]] == UnitStatus.HOLD.value
        assert statuses[VINS[2]] == UnitStatus.ACTIVE.value

    def test_release_restores_quantity(self, db, stock_item):
        ledger = InventoryLedger(db)
        ledger.reserve(stock_item.id, VINS[:2])
        result = ledger.release(stock_item.id, VINS[:2])

        assert result.ok
        db.expire_all()
        assert stock_item.quantity == 5
        assert set(unit_statuses(db, stock_item).values()) == {UnitStatus.ACTIVE.value}

    def test_unknown_chassis_is_skipped(self, db, stock_item):
        result = InventoryLedger(db).reserve(stock_item.id, [VINS[0], "NOT-A-REAL-VIN"])

        assert result.ok
        assert result.reserved == {stock_item.id: [VINS[0]]}
        assert result.skipped == {stock_item.id: ["NOT-A-REAL-VIN"]}
        db.expire_all()
        assert stock_item.quantity == 4

    def test_unavailable_unit_fails_whole_batch(self, db, stock_item):
        ledger = InventoryLedger(db)
        ledger.reserve(stock_item.id, [VINS[0]])

        result = ledger.reserve_batch([(stock_item.id, [VINS[1], VINS[0]])])

        assert not result.ok
        assert result.reserved == {}
        assert result.failed[0].chassis_number == VINS[0]
        assert result.failed[0].reason == "unavailable"
        db.expire_all()
        assert stock_item.quantity == 4
        assert unit_statuses(db, stock_item)[VINS[1]] == UnitStatus.ACTIVE.value
        with pytest.raises(InsufficientStockError):
            result.raise_if_failed()

    def test_batch_across_stock_items(self, db, stock_item):
        other = make_stock_item(db, sku="PRADO-2024-GRY", chassis_numbers=["PRADO-0001", "PRADO-0002"])
        result = InventoryLedger(db).reserve_batch([
            (stock_item.id, [VINS[0]]),
            (other.id, ["PRADO-0001", "PRADO-0002"]),
            (stock_item.id, [VINS[1]]),
        ])

        assert result.ok
        assert result.reserved == {stock_item.id: VINS[:2], other.id: ["PRADO-0001", "PRADO-0002"]}
        db.expire_all()
        assert stock_item.quantity == 3
        assert other.quantity == 0
        assert other.status == StockStatus.OUT_OF_STOCK.value

    def test_quantity_below_request_is_insufficient(self, db, stock_item):
        db.execute(update(type(stock_item)).where(type(stock_item).id == stock_item.id).values(quantity=1))
        db.expire_all()

        result = InventoryLedger(db).reserve(stock_item.id, VINS[:2])

        assert [f.reason for f in result.failed] == ["insufficient"]
        assert set(unit_statuses(db, stock_item).values()) == {UnitStatus.ACTIVE.value}

    def test_concurrent_change_rolls_back_batch(self, db, stock_item, monkeypatch):
        other = make_stock_item(db, sku="PRADO-2024-GRY", chassis_numbers=["PRADO-0001"])
        original_plan = InventoryLedger._plan

        def plan_then_sell(self, requests, *args):
            plan = original_plan(self, requests, *args)
            # another writer sells the unit between planning and applying
            self.db.execute(
                update(UnitRecord)
                .where(UnitRecord.chassis_number == "PRADO-0001")
                .values(status=UnitStatus.SOLD.value)
            )
            return plan

        monkeypatch.setattr(InventoryLedger, "_plan", plan_then_sell)
        result = InventoryLedger(db).reserve_batch([
            (stock_item.id, [VINS[0]]),
            (other.id, ["PRADO-0001"]),
        ])

        assert [f.reason for f in result.failed] == ["conflict"]
        assert result.reserved == {}
        db.expire_all()
        assert stock_item.quantity == 5
        assert unit_statuses(db, stock_item)[VINS[0]] == UnitStatus.ACTIVE.value
        with pytest.raises(ConflictError):
            result.raise_if_failed()

    def test_release_of_active_unit_fails_unless_tolerated(self, db, stock_item):
        ledger = InventoryLedger(db)
        assert not ledger.release(stock_item.id, [VINS[0]]).ok

        result = ledger.release_batch([(stock_item.id, [VINS[0]])], tolerate_released=True)
        assert result.ok
        assert result.reserved == {}
        db.expire_all()
        assert stock_item.quantity == 5

    def test_unknown_stock_item(self, db):
        with pytest.raises(NotFoundError):
            InventoryLedger(db).reserve(999, ["VIN"])

    def test_repeated_chassis_fails_batch(self, db, stock_item):
        result = InventoryLedger(db).reserve_batch([
            (stock_item.id, [VINS[0]]),
            (stock_item.id, [VINS[0], VINS[1]]),
        ])

        assert [(f.reason, f.chassis_number) for f in result.failed] == [("duplicate", VINS[0])]
        assert result.describe() == f"{VINS[0]} is requested more than once"
        assert result.reserved == {}
        db.expire_all()
        assert stock_item.quantity == 5
        with pytest.raises(ConflictError):
            result.raise_if_failed()


class TestHoldOwnership:
    @pytest.fixture
    def taken_over(self, db, stock_item):
        """VINS[0] held for QID-A, released by an admin, then held for QID-B."""
        ledger = InventoryLedger(db)
        assert ledger.reserve_batch([(stock_item.id, [VINS[0]])], hold_ref="QID-A").ok
        assert ledger.release(stock_item.id, [VINS[0]]).ok
        assert ledger.reserve_batch([(stock_item.id, [VINS[0]])], hold_ref="QID-B").ok
        return ledger

    def test_hold_records_ref(self, db, stock_item, taken_over):
        db.expire_all()
        unit = next(u for u in stock_item.units if u.chassis_number == VINS[0])
        assert (unit.status, unit.hold_ref) == (UnitStatus.HOLD.value, "QID-B")

    def test_release_leaves_other_quotations_hold(self, db, stock_item, taken_over):
        result = taken_over.release_batch([(stock_item.id, [VINS[0]])], tolerate_released=True, hold_ref="QID-A")

        assert result.ok
        assert result.reserved == {}
        assert result.skipped == {stock_item.id: [VINS[0]]}
        db.expire_all()
        assert stock_item.quantity == 4
        assert unit_statuses(db, stock_item)[VINS[0]] == UnitStatus.HOLD.value

    def test_reassert_reports_other_quotations_hold(self, db, stock_item, taken_over):
        result = taken_over.reassert_hold_batch([(stock_item.id, [VINS[0]])], "QID-A")

        assert [f.reason for f in result.failed] == ["claimed"]
        with pytest.raises(ConflictError):
            result.raise_if_failed()

    def test_sell_refuses_other_quotations_hold(self, db, stock_item, taken_over):
        assert [f.reason for f in taken_over.mark_sold_batch([(stock_item.id, [VINS[0]])], "QID-A").failed] == [
            "claimed"
        ]
        assert taken_over.mark_sold_batch([(stock_item.id, [VINS[0]])], "QID-B").ok

    def test_reserving_held_unit_is_unavailable(self, db, stock_item, taken_over):
        result = taken_over.reserve_batch([(stock_item.id, [VINS[0]])], hold_ref="QID-C")

        assert [f.reason for f in result.failed] == ["unavailable"]
        with pytest.raises(InsufficientStockError):
            result.raise_if_failed()

    def test_admin_release_clears_ref(self, db, stock_item, taken_over):
        assert taken_over.release(stock_item.id, [VINS[0]]).ok
        db.expire_all()
        unit = next(u for u in stock_item.units if u.chassis_number == VINS[0])
        assert (unit.status, unit.hold_ref) == (UnitStatus.ACTIVE.value, None)


class TestMarkSold:
    def test_sold_keeps_quantity(self, db, stock_item):
        ledger = InventoryLedger(db)
        ledger.reserve(stock_item.id, [VINS[0]])
        result = ledger.mark_sold(stock_item.id, [VINS[0]])

        assert result.ok
        db.expire_all()
        assert stock_item.quantity == 4
        assert unit_statuses(db, stock_item)[VINS[0]] == UnitStatus.SOLD.value
        assert ledger.verify_quantity(stock_item.id)["consistent"]

    def test_active_unit_cannot_be_sold(self, db, stock_item):
        result = InventoryLedger(db).mark_sold(stock_item.id, [VINS[0]])
        assert result.failed[0].reason == "unavailable"


class TestVerification:
    def test_consistent_after_ledger_moves(self, db, stock_item):
        ledger = InventoryLedger(db)
        ledger.reserve(stock_item.id, VINS[:3])
        ledger.release(stock_item.id, [VINS[1]])

        report = ledger.verify_quantity(stock_item.id)
        assert report == {"stock_item_id": stock_item.id, "quantity": 3, "active_units": 3, "consistent": True}

    def test_drift_detected(self, db, stock_item):
        db.execute(update(UnitRecord).where(UnitRecord.chassis_number == VINS[0]).values(status="inactive"))
        db.expire_all()
        assert not InventoryLedger(db).verify_quantity(stock_item.id)["consistent"]

    def test_unserialized_item_is_consistent(self, db):
        item = make_stock_item(db, sku="MAT-FLOOR", chassis_numbers=[], item_type="part",
                               name="Floor mats", quantity=12)
        assert InventoryLedger(db).verify_quantity(item.id)["active_units"] is None


def test_merge_requests_groups_and_dedupes():
    merged = merge_requests([(1, ["A", " B ", ""]), (2, []), (1, ["A", "C"])])
    assert dict(merged) == {1: ["A", "B", "C"]}
