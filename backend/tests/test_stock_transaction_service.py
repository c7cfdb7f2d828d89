# Overview: Pytest coverage for the stock transaction coordinator.

"""
Stock Coordinator Tests

Covers sales, stock-ins, adjustments, transfers and returns:
- Balances and ledger entries move together or not at all
- Multi-item sales are atomic and report every short line
- Invoice numbers are issued inside the sale transaction
- Idempotency keys replay the committed sale
- Low-stock listeners fire once, after commit, on the crossing operation
"""

import pytest

from stockledger.models import InventoryItem, MovementEntry, SaleLineItem, SaleTransaction, StockAccount
from stockledger.models.stock import (
    KIND_ADJUSTMENT,
    KIND_RETURN,
    KIND_SALE,
    KIND_STOCK_IN,
    KIND_TRANSFER_IN,
    KIND_TRANSFER_OUT,
)
from stockledger.services import movement_ledger_service, sequence_service, stock_account_service
from stockledger.services import stock_transaction_service as coordinator
from stockledger.services.concurrency import ConcurrencyTimeoutError, HELD_STOCK_LOCKS
from stockledger.time_utils import business_year
from stockledger.validation import InsufficientStockError, NotFoundError, ValidationError

ACTOR = "user-17"


def _entries(db_session, shop, item):
    return (
        db_session.query(MovementEntry)
        .filter_by(shop_id=shop.id, item_id=item.id)
        .order_by(MovementEntry.id.asc())
        .all()
    )


def _invoice(number):
    return sequence_service.format_invoice_number(business_year(), number)


class TestStockIn:
    def test_stock_in_from_zero(self, db_session, shop, beans):
        quantity = coordinator.apply_stock_in(shop.id, beans.id, 50, ACTOR)

        assert quantity == 50
        assert stock_account_service.get_balance(shop.id, beans.id) == 50
        entries = _entries(db_session, shop, beans)
        assert len(entries) == 1
        assert entries[0].kind == KIND_STOCK_IN
        assert entries[0].quantity_delta == 50
        assert entries[0].resulting_quantity == 50
        assert entries[0].actor_id == ACTOR

    @pytest.mark.parametrize("quantity", [0, -3, 2.5, "1e3", True, None])
    def test_stock_in_rejects_bad_quantity(self, db_session, shop, beans, quantity):
        with pytest.raises(ValidationError):
            coordinator.apply_stock_in(shop.id, beans.id, quantity, ACTOR)
        assert _entries(db_session, shop, beans) == []

    def test_stock_in_requires_actor(self, db_session, shop, beans):
        with pytest.raises(ValidationError, match="actor_id"):
            coordinator.apply_stock_in(shop.id, beans.id, 5, "  ")

    def test_stock_in_unknown_item(self, db_session, shop):
        with pytest.raises(NotFoundError):
            coordinator.apply_stock_in(shop.id, 424242, 5, ACTOR)

    def test_stock_in_archived_item_is_missing(self, db_session, shop, beans):
        beans.is_archived = True
        db_session.commit()
        with pytest.raises(NotFoundError):
            coordinator.apply_stock_in(shop.id, beans.id, 5, ACTOR)

    def test_stock_in_inactive_shop(self, db_session, shop, beans):
        shop.is_active = False
        db_session.commit()
        with pytest.raises(ValidationError, match="inactive"):
            coordinator.apply_stock_in(shop.id, beans.id, 5, ACTOR)
        assert db_session.query(StockAccount).count() == 0

    def test_stock_in_other_merchants_item(self, db_session, shop, foreign_item):
        with pytest.raises(ValidationError, match="does not belong"):
            coordinator.apply_stock_in(shop.id, foreign_item.id, 5, ACTOR)

    def test_batch_stock_in_is_one_correlation(self, db_session, shop, beans, cups):
        result = coordinator.apply_stock_in_batch(
            shop.id,
            [{"item_id": beans.id, "quantity": 4}, {"item_id": cups.id, "quantity": 9}],
            ACTOR,
        )

        assert result == {beans.id: 4, cups.id: 9}
        correlation_ids = {e.correlation_id for e in db_session.query(MovementEntry).all()}
        assert len(correlation_ids) == 1

    def test_batch_stock_in_rejects_whole_batch(self, db_session, shop, beans, cups):
        with pytest.raises(ValidationError):
            coordinator.apply_stock_in_batch(
                shop.id,
                [{"item_id": beans.id, "quantity": 4}, {"item_id": cups.id, "quantity": 0}],
                ACTOR,
            )
        assert db_session.query(MovementEntry).count() == 0

    def test_batch_stock_in_rejects_duplicates(self, db_session, shop, beans):
        with pytest.raises(ValidationError, match="Duplicate"):
            coordinator.apply_stock_in_batch(
                shop.id,
                [{"item_id": beans.id, "quantity": 1}, {"item_id": beans.id, "quantity": 2}],
                ACTOR,
            )


class TestAdjustment:
    def test_negative_adjustment_with_reason(self, db_session, shop, beans, stock_in):
        stock_in(shop, beans, 50)

        quantity = coordinator.apply_adjustment(shop.id, beans.id, -5, "damaged", ACTOR)

        assert quantity == 45
        last = _entries(db_session, shop, beans)[-1]
        assert last.kind == KIND_ADJUSTMENT
        assert last.quantity_delta == -5
        assert last.reason == "damaged"

    def test_positive_adjustment(self, db_session, shop, beans, stock_in):
        stock_in(shop, beans, 2)
        assert coordinator.apply_adjustment(shop.id, beans.id, 3, "found in back room", ACTOR) == 5

    def test_adjustment_requires_reason(self, db_session, shop, beans, stock_in):
        stock_in(shop, beans, 10)
        with pytest.raises(ValidationError, match="reason"):
            coordinator.apply_adjustment(shop.id, beans.id, -1, "", ACTOR)

    def test_zero_adjustment_rejected(self, db_session, shop, beans):
        with pytest.raises(ValidationError, match="zero"):
            coordinator.apply_adjustment(shop.id, beans.id, 0, "noop", ACTOR)

    def test_adjustment_below_zero_rejected(self, db_session, shop, beans, stock_in):
        stock_in(shop, beans, 3)
        with pytest.raises(InsufficientStockError) as exc_info:
            coordinator.apply_adjustment(shop.id, beans.id, -4, "shrinkage", ACTOR)

        assert exc_info.value.requested == 4
        assert exc_info.value.available == 3
        assert stock_account_service.get_balance(shop.id, beans.id) == 3
        assert len(_entries(db_session, shop, beans)) == 1


class TestSale:
    def test_sale_decrements_and_invoices(self, db_session, shop, merchant, beans, stock_in):
        stock_in(shop, beans, 10)

        sale = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 3}], actor_id=ACTOR)

        assert stock_account_service.get_balance(shop.id, beans.id) == 7
        assert sale.invoice_number == _invoice(1)
        entries = _entries(db_session, shop, beans)
        assert len(entries) == 2
        assert entries[-1].kind == KIND_SALE
        assert entries[-1].quantity_delta == -3
        assert entries[-1].resulting_quantity == 7
        assert entries[-1].correlation_id == sale.correlation_id

    def test_insufficient_stock_leaves_state_untouched(self, db_session, shop, merchant, beans, stock_in):
        stock_in(shop, beans, 10)

        with pytest.raises(InsufficientStockError) as exc_info:
            coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 20}], actor_id=ACTOR)

        assert exc_info.value.item_id == beans.id
        assert exc_info.value.requested == 20
        assert exc_info.value.available == 10
        assert stock_account_service.get_balance(shop.id, beans.id) == 10
        assert len(_entries(db_session, shop, beans)) == 1
        assert db_session.query(SaleTransaction).count() == 0
        assert sequence_service.peek_last_issued(sequence_service.invoice_scope(business_year())) == 0

    def test_multi_item_sale_is_atomic(self, db_session, shop, merchant, beans, cups, milk, stock_in):
        stock_in(shop, beans, 5)
        stock_in(shop, cups, 1)
        stock_in(shop, milk, 5)

        with pytest.raises(InsufficientStockError):
            coordinator.apply_sale(
                shop.id,
                merchant.id,
                [
                    {"item_id": beans.id, "quantity": 2},
                    {"item_id": cups.id, "quantity": 3},
                    {"item_id": milk.id, "quantity": 1},
                ],
                actor_id=ACTOR,
            )

        assert stock_account_service.get_balance(shop.id, beans.id) == 5
        assert stock_account_service.get_balance(shop.id, cups.id) == 1
        assert stock_account_service.get_balance(shop.id, milk.id) == 5
        assert db_session.query(MovementEntry).filter_by(kind=KIND_SALE).count() == 0
        assert db_session.query(SaleLineItem).count() == 0

    def test_every_short_line_is_reported(self, db_session, shop, merchant, beans, cups, milk, stock_in):
        stock_in(shop, beans, 1)
        stock_in(shop, milk, 10)

        with pytest.raises(InsufficientStockError) as exc_info:
            coordinator.apply_sale(
                shop.id,
                merchant.id,
                [
                    {"item_id": beans.id, "quantity": 2},
                    {"item_id": milk.id, "quantity": 1},
                    {"item_id": cups.id, "quantity": 4},
                ],
                actor_id=ACTOR,
            )

        assert exc_info.value.details == {
            "shop_id": shop.id,
            "items": [
                {"item_id": beans.id, "requested": 2, "available": 1},
                {"item_id": cups.id, "requested": 4, "available": 0},
            ],
        }

    def test_sale_lines_and_totals(self, db_session, shop, merchant, beans, cups, stock_in):
        stock_in(shop, beans, 5)
        stock_in(shop, cups, 5)

        sale = coordinator.apply_sale(
            shop.id,
            merchant.id,
            [
                {"item_id": cups.id, "quantity": 2},
                {"item_id": beans.id, "quantity": 1, "unit_price_cents": 2000},
            ],
            {"payment_type": "card", "discount_cents": 300, "customer_id": "c-9"},
            actor_id=ACTOR,
        )

        assert sale.subtotal_cents == 2 * 650 + 2000
        assert sale.discount_cents == 300
        assert sale.total_cents == 2 * 650 + 2000 - 300
        assert sale.payment_type == "card"
        assert [line.line_number for line in sale.lines] == [1, 2]
        assert [line.item_id for line in sale.lines] == [cups.id, beans.id]
        assert sale.lines[1].unit_price_cents == 2000
        assert sale.lines[0].item_sku == "CUP-50"

        entry_ids = {e.id for e in movement_ledger_service.entries_for_correlation(sale.correlation_id)}
        assert {line.movement_entry_id for line in sale.lines} == entry_ids

    def test_invoice_numbers_are_contiguous(self, db_session, shop, merchant, beans, stock_in):
        stock_in(shop, beans, 10)

        numbers = [
            coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], actor_id=ACTOR).invoice_number
            for _ in range(3)
        ]

        assert numbers == [_invoice(1), _invoice(2), _invoice(3)]

    def test_failed_sale_does_not_burn_invoice_number(self, db_session, shop, merchant, beans, stock_in):
        stock_in(shop, beans, 2)
        coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], actor_id=ACTOR)
        with pytest.raises(InsufficientStockError):
            coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 5}], actor_id=ACTOR)

        sale = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], actor_id=ACTOR)

        assert sale.invoice_number == _invoice(2)

    def test_duplicate_items_rejected(self, db_session, shop, merchant, beans, stock_in):
        stock_in(shop, beans, 10)
        with pytest.raises(ValidationError, match="Duplicate"):
            coordinator.apply_sale(
                shop.id,
                merchant.id,
                [{"item_id": beans.id, "quantity": 1}, {"item_id": beans.id, "quantity": 2}],
                actor_id=ACTOR,
            )

    def test_merge_line_items(self, db_session, beans, cups):
        merged = coordinator.merge_line_items([
            {"item_id": beans.id, "quantity": 1},
            {"item_id": cups.id, "quantity": 2},
            {"item_id": beans.id, "quantity": 2, "unit_price_cents": 100},
        ])

        assert merged == [
            coordinator.SaleLineRequest(item_id=beans.id, quantity=3, unit_price_cents=100),
            coordinator.SaleLineRequest(item_id=cups.id, quantity=2),
        ]

    def test_merge_line_items_conflicting_prices(self, db_session, beans):
        with pytest.raises(ValidationError, match="conflicting"):
            coordinator.merge_line_items([
                {"item_id": beans.id, "quantity": 1, "unit_price_cents": 100},
                {"item_id": beans.id, "quantity": 1, "unit_price_cents": 200},
            ])

    @pytest.mark.parametrize("line_items", [[], None, "beans", {"item_id": 1}])
    def test_empty_or_malformed_lines(self, db_session, shop, merchant, line_items):
        with pytest.raises(ValidationError):
            coordinator.apply_sale(shop.id, merchant.id, line_items, actor_id=ACTOR)

    def test_wrong_merchant_rejected(self, db_session, shop, other_merchant, beans, stock_in):
        stock_in(shop, beans, 10)
        with pytest.raises(ValidationError, match="does not belong"):
            coordinator.apply_sale(shop.id, other_merchant.id, [{"item_id": beans.id, "quantity": 1}], actor_id=ACTOR)

    def test_item_without_price_needs_override(self, db_session, shop, merchant, stock_in):
        gift = InventoryItem(merchant_id=merchant.id, name="Gift Card", sku="GIFT", price_cents=None)
        db_session.add(gift)
        db_session.commit()
        stock_in(shop, gift, 5)

        with pytest.raises(ValidationError, match="no price"):
            coordinator.apply_sale(shop.id, merchant.id, [{"item_id": gift.id, "quantity": 1}], actor_id=ACTOR)

        sale = coordinator.apply_sale(
            shop.id,
            merchant.id,
            [{"item_id": gift.id, "quantity": 1, "unit_price_cents": 5000}],
            actor_id=ACTOR,
        )
        assert sale.total_cents == 5000

    def test_discount_cannot_exceed_subtotal(self, db_session, shop, merchant, cups, stock_in):
        stock_in(shop, cups, 5)
        with pytest.raises(ValidationError, match="discount"):
            coordinator.apply_sale(
                shop.id,
                merchant.id,
                [{"item_id": cups.id, "quantity": 1}],
                {"discount_cents": 651},
                actor_id=ACTOR,
            )

    def test_locks_are_released_after_failure(self, db_session, shop, merchant, beans):
        with pytest.raises(InsufficientStockError):
            coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], actor_id=ACTOR)
        assert HELD_STOCK_LOCKS not in db_session.info

    def test_lock_timeout_surfaces_as_retryable(self, db_session, shop, merchant, beans, stock_in, monkeypatch):
        from sqlalchemy.exc import OperationalError

        stock_in(shop, beans, 5)

        def _busy(timeout_ms=None):
            raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

        monkeypatch.setattr(coordinator, "begin_locked_write", _busy)

        with pytest.raises(ConcurrencyTimeoutError) as exc_info:
            coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], actor_id=ACTOR)

        assert exc_info.value.retryable is True
        assert exc_info.value.shop_id == shop.id
        assert exc_info.value.item_ids == [beans.id]
        assert stock_account_service.get_balance(shop.id, beans.id) == 5


class TestIdempotency:
    def test_repeated_key_returns_first_sale(self, db_session, shop, merchant, beans, stock_in):
        stock_in(shop, beans, 10)
        meta = {"idempotency_key": "till-3-0001"}

        first = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 2}], meta, actor_id=ACTOR)
        second = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 2}], meta, actor_id=ACTOR)

        assert second.id == first.id
        assert second.invoice_number == first.invoice_number
        assert stock_account_service.get_balance(shop.id, beans.id) == 8
        assert db_session.query(SaleTransaction).count() == 1

    def test_key_replayed_while_waiting_for_locks(self, db_session, shop, merchant, beans, stock_in, monkeypatch):
        stock_in(shop, beans, 10)
        meta = {"idempotency_key": "till-3-0002"}
        first = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 2}], meta, actor_id=ACTOR)

        # Simulate the first request committing between the pre-check and lock acquisition
        monkeypatch.setattr(coordinator, "find_sale_by_idempotency_key", lambda shop_id, key: None)
        second = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 2}], meta, actor_id=ACTOR)

        assert second.id == first.id
        assert stock_account_service.get_balance(shop.id, beans.id) == 8

    def test_key_replays_after_item_archived(self, db_session, shop, merchant, beans, stock_in):
        stock_in(shop, beans, 5)
        meta = {"idempotency_key": "till-3-0003"}
        first = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], meta, actor_id=ACTOR)

        beans.is_archived = True
        db_session.commit()
        second = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], meta, actor_id=ACTOR)

        assert second.id == first.id
        assert stock_account_service.get_balance(shop.id, beans.id) == 4

    def test_key_replays_after_shop_deactivated(self, db_session, shop, merchant, beans, stock_in):
        stock_in(shop, beans, 5)
        meta = {"idempotency_key": "till-3-0004"}
        first = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], meta, actor_id=ACTOR)

        shop.is_active = False
        db_session.commit()
        second = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], meta, actor_id=ACTOR)

        assert second.id == first.id
        assert db_session.query(SaleTransaction).count() == 1

    def test_same_key_in_other_shop_is_independent(self, db_session, shop, second_shop, merchant, beans, stock_in):
        stock_in(shop, beans, 5)
        stock_in(second_shop, beans, 5)
        meta = {"idempotency_key": "shared"}

        first = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], meta, actor_id=ACTOR)
        second = coordinator.apply_sale(second_shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], meta, actor_id=ACTOR)

        assert first.id != second.id


class TestTransfer:
    def test_transfer_moves_stock(self, db_session, shop, second_shop, beans, stock_in):
        stock_in(shop, beans, 10)

        result = coordinator.apply_transfer(beans.id, shop.id, second_shop.id, 4, ACTOR)

        assert result["from_quantity"] == 6
        assert result["to_quantity"] == 4
        entries = movement_ledger_service.entries_for_correlation(result["correlation_id"])
        assert sorted(e.kind for e in entries) == [KIND_TRANSFER_IN, KIND_TRANSFER_OUT]
        assert sum(e.quantity_delta for e in entries) == 0

    def test_transfer_insufficient(self, db_session, shop, second_shop, beans, stock_in):
        stock_in(shop, beans, 1)
        with pytest.raises(InsufficientStockError):
            coordinator.apply_transfer(beans.id, shop.id, second_shop.id, 2, ACTOR)
        assert stock_account_service.get_balance(second_shop.id, beans.id) == 0

    def test_transfer_same_shop_rejected(self, db_session, shop, beans):
        with pytest.raises(ValidationError, match="different"):
            coordinator.apply_transfer(beans.id, shop.id, shop.id, 1, ACTOR)

    def test_transfer_across_merchants_rejected(self, db_session, shop, foreign_shop, beans, stock_in):
        stock_in(shop, beans, 5)
        with pytest.raises(ValidationError, match="does not belong"):
            coordinator.apply_transfer(beans.id, shop.id, foreign_shop.id, 1, ACTOR)


class TestReturn:
    def _sale(self, shop, merchant, item, quantity):
        return coordinator.apply_sale(shop.id, merchant.id, [{"item_id": item.id, "quantity": quantity}], actor_id=ACTOR)

    def test_return_restores_stock(self, db_session, shop, merchant, beans, stock_in):
        stock_in(shop, beans, 10)
        sale = self._sale(shop, merchant, beans, 4)

        quantity = coordinator.apply_return(sale.id, beans.id, 3, ACTOR)

        assert quantity == 9
        last = _entries(db_session, shop, beans)[-1]
        assert last.kind == KIND_RETURN
        assert last.reference_correlation_id == sale.correlation_id
        assert sale.invoice_number in last.reason

    def test_cannot_return_more_than_sold(self, db_session, shop, merchant, beans, stock_in):
        stock_in(shop, beans, 10)
        sale = self._sale(shop, merchant, beans, 4)
        coordinator.apply_return(sale.id, beans.id, 3, ACTOR)

        with pytest.raises(ValidationError, match="still returnable"):
            coordinator.apply_return(sale.id, beans.id, 2, ACTOR)
        assert stock_account_service.get_balance(shop.id, beans.id) == 9

    def test_return_of_item_not_on_sale(self, db_session, shop, merchant, beans, cups, stock_in):
        stock_in(shop, beans, 10)
        sale = self._sale(shop, merchant, beans, 1)
        with pytest.raises(ValidationError, match="not sold"):
            coordinator.apply_return(sale.id, cups.id, 1, ACTOR)

    def test_return_unknown_sale(self, db_session, beans):
        with pytest.raises(NotFoundError):
            coordinator.apply_return(999, beans.id, 1, ACTOR)


class TestLowStock:
    def test_fires_once_on_crossing(self, db_session, shop, merchant, beans, stock_in, low_stock_events):
        stock_in(shop, beans, 5)

        coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 2}], actor_id=ACTOR)
        assert low_stock_events == []

        coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], actor_id=ACTOR)
        assert len(low_stock_events) == 1
        event = low_stock_events[0]
        assert (event.shop_id, event.item_id) == (shop.id, beans.id)
        assert event.previous_quantity == 3
        assert event.new_quantity == 2
        assert event.low_stock_threshold == 3

        coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], actor_id=ACTOR)
        assert len(low_stock_events) == 1

    def test_default_threshold_from_config(self, app, db_session, shop, cups, stock_in, low_stock_events, monkeypatch):
        monkeypatch.setitem(app.config, "DEFAULT_LOW_STOCK_THRESHOLD", 10)
        stock_in(shop, cups, 12)

        coordinator.apply_adjustment(shop.id, cups.id, -4, "spoiled", ACTOR)

        assert [(e.previous_quantity, e.new_quantity, e.low_stock_threshold) for e in low_stock_events] == [(12, 8, 10)]

    def test_no_event_on_failed_operation(self, db_session, shop, merchant, beans, stock_in, low_stock_events):
        stock_in(shop, beans, 5)
        with pytest.raises(InsufficientStockError):
            coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 6}], actor_id=ACTOR)
        assert low_stock_events == []

    def test_failing_listener_does_not_undo_commit(self, app, db_session, shop, merchant, beans, stock_in):
        from stockledger.extensions import LOW_STOCK_LISTENERS

        def _broken(event):
            raise RuntimeError("notifier down")

        app.extensions[LOW_STOCK_LISTENERS].append(_broken)
        try:
            stock_in(shop, beans, 3)
            sale = coordinator.apply_sale(shop.id, merchant.id, [{"item_id": beans.id, "quantity": 1}], actor_id=ACTOR)
        finally:
            app.extensions[LOW_STOCK_LISTENERS].remove(_broken)

        assert sale.id is not None
        assert stock_account_service.get_balance(shop.id, beans.id) == 2


class TestLedgerConsistency:
    def test_balance_matches_ledger_after_mixed_operations(
        self, db_session, shop, second_shop, merchant, beans, cups, stock_in
    ):
        stock_in(shop, beans, 20)
        stock_in(shop, cups, 8)
        sale = coordinator.apply_sale(
            shop.id,
            merchant.id,
            [{"item_id": beans.id, "quantity": 3}, {"item_id": cups.id, "quantity": 2}],
            actor_id=ACTOR,
        )
        coordinator.apply_adjustment(shop.id, cups.id, -1, "crushed", ACTOR)
        coordinator.apply_transfer(beans.id, shop.id, second_shop.id, 5, ACTOR)
        coordinator.apply_return(sale.id, beans.id, 1, ACTOR)
        with pytest.raises(InsufficientStockError):
            coordinator.apply_sale(shop.id, merchant.id, [{"item_id": cups.id, "quantity": 50}], actor_id=ACTOR)

        for s, item in [(shop, beans), (shop, cups), (second_shop, beans)]:
            assert movement_ledger_service.reconstruct_balance(s.id, item.id) == stock_account_service.get_balance(s.id, item.id)
        assert movement_ledger_service.verify_integrity() == []
        assert stock_account_service.get_balance(shop.id, beans.id) == 13
        assert stock_account_service.get_balance(shop.id, cups.id) == 5
