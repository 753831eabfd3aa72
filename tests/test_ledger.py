"""
Tests for the funding ledger — THE MOST CRITICAL TEST FILE.

These tests verify:
  - A funding reference credits a card at most once
  - Spends are rejected (never clamped) past the balance or spending limit,
    and the declined attempt is kept as a failed row
  - Refunds credit the balance and lower current_spend, capped at the spend
  - Transfers move balance atomically with linked rows on both cards
  - Deactivated cards refuse new money movements
  - The cached balance always equals the transaction log (reconciliation)
"""

import uuid

import pytest
from sqlalchemy import update

from fundcard.exceptions import (
    CardInactiveError,
    CardNotFoundError,
    InsufficientBalanceError,
    SpendingLimitExceededError,
    ValidationError,
)
from fundcard.models.card import VirtualCard
from fundcard.models.card_transaction import TransactionStatus, TransactionType
from fundcard.services import card_service, ledger_service


async def assert_consistent(db, card_id):
    report = await ledger_service.reconcile(db, card_id)
    assert report.consistent, report
    return report


class TestFunding:

    async def test_initial_funding(self, db_session, card_factory):
        card_id = await card_factory(100)

        card = await ledger_service.load_card(db_session, card_id)
        assert card.balance == 100
        assert card.current_spend == 0

        txns = await ledger_service.list_transactions(db_session, card_id)
        assert len(txns) == 1
        assert txns[0].type is TransactionType.FUND
        assert txns[0].status is TransactionStatus.COMPLETED
        assert txns[0].completed_at is not None

    async def test_same_reference_applies_once(self, db_session, card_factory):
        card_id = await card_factory(100)

        first = await ledger_service.apply_funding(db_session, card_id, "fund_topup_1", 50)
        await db_session.commit()
        second = await ledger_service.apply_funding(db_session, card_id, "fund_topup_1", 50)
        await db_session.commit()

        assert first.applied is True
        assert second.applied is False
        assert second.transaction.id == first.transaction.id
        assert second.card.balance == 150
        await assert_consistent(db_session, card_id)

    async def test_currency_mismatch(self, db_session, card_factory):
        card_id = await card_factory(100)
        with pytest.raises(ValidationError):
            await ledger_service.apply_funding(db_session, card_id, "fund_eur", 50, "EUR")

    @pytest.mark.parametrize("amount", [0, -5, True, 1.5])
    async def test_non_positive_amount(self, db_session, card_factory, amount):
        card_id = await card_factory(100)
        with pytest.raises(ValidationError):
            await ledger_service.apply_funding(db_session, card_id, "fund_x", amount)

    async def test_unknown_card(self, db_session):
        with pytest.raises(CardNotFoundError):
            await ledger_service.apply_funding(db_session, uuid.uuid4(), "fund_x", 50)

    async def test_inactive_card_refuses_new_funding(self, db_session, card_factory):
        card_id = await card_factory(100)
        card = await ledger_service.load_card(db_session, card_id)
        await card_service.deactivate_card(db_session, card_id)
        await db_session.commit()

        with pytest.raises(CardInactiveError):
            await ledger_service.apply_funding(db_session, card_id, "fund_late", 50)

        # Replaying the funding it already received is still a no-op
        replay = await ledger_service.apply_funding(
            db_session, card_id, card.funding_reference, 100
        )
        assert replay.applied is False
        assert replay.card.balance == 100


class TestSpend:

    async def test_spend_within_balance(self, db_session, card_factory):
        card_id = await card_factory(100)

        result = await ledger_service.apply_spend(db_session, card_id, 40, merchant="Kiosk")
        await db_session.commit()

        assert result.applied is True
        assert result.card.balance == 60
        assert result.card.current_spend == 40
        assert result.transaction.merchant == "Kiosk"
        assert result.transaction.status is TransactionStatus.COMPLETED
        await assert_consistent(db_session, card_id)

    async def test_overspend_rejected_not_clamped(self, db_session, card_factory):
        """Balance 100, spend 150: rejected, balance stays 100, failed row kept."""
        card_id = await card_factory(100)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger_service.apply_spend(db_session, card_id, 150, reference="spend_big")
        await db_session.commit()

        assert exc_info.value.requested == 150
        assert exc_info.value.available == 100
        card = await ledger_service.load_card(db_session, card_id)
        assert card.balance == 100
        assert card.current_spend == 0

        failed = await ledger_service.list_transactions(
            db_session, card_id, status_filter=TransactionStatus.FAILED
        )
        assert [t.reference for t in failed] == ["spend_big"]
        await assert_consistent(db_session, card_id)

    async def test_declined_reference_cannot_be_retried(self, db_session, card_factory):
        card_id = await card_factory(100)
        with pytest.raises(InsufficientBalanceError):
            await ledger_service.apply_spend(db_session, card_id, 150, reference="spend_big")
        await db_session.commit()

        with pytest.raises(ValidationError):
            await ledger_service.apply_spend(db_session, card_id, 50, reference="spend_big")

    async def test_spend_exact_balance(self, db_session, card_factory):
        card_id = await card_factory(100)
        result = await ledger_service.apply_spend(db_session, card_id, 100)
        assert result.card.balance == 0

    async def test_spending_limit(self, db_session, card_factory):
        card_id = await card_factory(100, spending_limit=50)

        await ledger_service.apply_spend(db_session, card_id, 30)
        with pytest.raises(SpendingLimitExceededError) as exc_info:
            await ledger_service.apply_spend(db_session, card_id, 30)
        await db_session.commit()

        assert exc_info.value.remaining == 20
        card = await ledger_service.load_card(db_session, card_id)
        assert card.balance == 70
        assert card.current_spend == 30

    async def test_repeated_reference_is_idempotent(self, db_session, card_factory):
        card_id = await card_factory(100)
        first = await ledger_service.apply_spend(db_session, card_id, 10, reference="order-1")
        second = await ledger_service.apply_spend(db_session, card_id, 10, reference="order-1")

        assert first.applied and not second.applied
        card = await ledger_service.load_card(db_session, card_id)
        assert card.balance == 90

    async def test_reference_of_other_type_rejected(self, db_session, card_factory):
        card_id = await card_factory(100)
        card = await ledger_service.load_card(db_session, card_id)
        with pytest.raises(ValidationError):
            await ledger_service.apply_spend(
                db_session, card_id, 10, reference=card.funding_reference
            )

    async def test_inactive_card(self, db_session, card_factory):
        card_id = await card_factory(100)
        await card_service.deactivate_card(db_session, card_id)

        with pytest.raises(CardInactiveError):
            await ledger_service.apply_spend(db_session, card_id, 10)
        await db_session.commit()

        card = await ledger_service.load_card(db_session, card_id)
        assert card.balance == 100


class TestRefund:

    async def test_refund_restores_balance_and_spend(self, db_session, card_factory):
        card_id = await card_factory(100)
        await ledger_service.apply_spend(db_session, card_id, 40)

        result = await ledger_service.apply_refund(db_session, card_id, 15)
        await db_session.commit()

        assert result.card.balance == 75
        assert result.card.current_spend == 25
        assert result.transaction.type is TransactionType.REFUND
        await assert_consistent(db_session, card_id)

    async def test_refund_capped_at_current_spend(self, db_session, card_factory):
        card_id = await card_factory(100)
        await ledger_service.apply_spend(db_session, card_id, 20)

        with pytest.raises(ValidationError):
            await ledger_service.apply_refund(db_session, card_id, 30)

    async def test_refund_without_spend(self, db_session, card_factory):
        card_id = await card_factory(100)
        with pytest.raises(ValidationError):
            await ledger_service.apply_refund(db_session, card_id, 1)


class TestTransfer:

    async def test_transfer_moves_balance(self, db_session, card_factory):
        source_id = await card_factory(100)
        destination_id = await card_factory(100)

        result = await ledger_service.apply_transfer(
            db_session, source_id, destination_id, 30, reference="gift-1"
        )
        await db_session.commit()

        assert result.source.balance == 70
        assert result.destination.balance == 130
        assert result.source.current_spend == 0
        assert result.debit.type is TransactionType.TRANSFER
        assert result.credit.type is TransactionType.FUND
        assert result.debit.counterparty_card_id == destination_id
        assert result.credit.counterparty_card_id == source_id
        assert result.debit.status is TransactionStatus.COMPLETED
        assert result.credit.status is TransactionStatus.COMPLETED
        await assert_consistent(db_session, source_id)
        await assert_consistent(db_session, destination_id)

    async def test_insufficient_balance(self, db_session, card_factory):
        source_id = await card_factory(100)
        destination_id = await card_factory(100)

        with pytest.raises(InsufficientBalanceError):
            await ledger_service.apply_transfer(db_session, source_id, destination_id, 500)
        await db_session.commit()

        assert (await ledger_service.load_card(db_session, source_id)).balance == 100
        assert (await ledger_service.load_card(db_session, destination_id)).balance == 100

    async def test_same_card(self, db_session, card_factory):
        card_id = await card_factory(100)
        with pytest.raises(ValidationError):
            await ledger_service.apply_transfer(db_session, card_id, card_id, 10)

    async def test_currency_mismatch(self, db_session, card_factory):
        source_id = await card_factory(100)
        destination_id = await card_factory(100, currency="NGN")
        with pytest.raises(ValidationError):
            await ledger_service.apply_transfer(db_session, source_id, destination_id, 10)

    async def test_reference_reuse(self, db_session, card_factory):
        source_id = await card_factory(100)
        destination_id = await card_factory(100)
        await ledger_service.apply_transfer(
            db_session, source_id, destination_id, 10, reference="gift-1"
        )
        await db_session.commit()

        with pytest.raises(ValidationError):
            await ledger_service.apply_transfer(
                db_session, source_id, destination_id, 10, reference="gift-1"
            )

    async def test_inactive_destination(self, db_session, card_factory):
        source_id = await card_factory(100)
        destination_id = await card_factory(100)
        await card_service.deactivate_card(db_session, destination_id)

        with pytest.raises(CardInactiveError):
            await ledger_service.apply_transfer(db_session, source_id, destination_id, 10)


class TestReconciliation:

    async def test_consistent_after_mixed_activity(self, db_session, card_factory):
        card_id = await card_factory(500)
        other_id = await card_factory(100)
        await ledger_service.apply_funding(db_session, card_id, "fund_more", 200)
        await ledger_service.apply_spend(db_session, card_id, 120)
        await ledger_service.apply_refund(db_session, card_id, 20)
        await ledger_service.apply_transfer(db_session, card_id, other_id, 50)
        with pytest.raises(SpendingLimitExceededError):
            await ledger_service.apply_spend(db_session, card_id, 450)
        await db_session.commit()

        report = await assert_consistent(db_session, card_id)
        assert report.computed_balance == 500 + 200 - 120 + 20 - 50
        assert report.computed_spend == 100
        assert await ledger_service.reconcile_all(db_session) == []

    async def test_reconcile_all_reports_drift(self, db_session, card_factory):
        good_id = await card_factory(100)
        bad_id = await card_factory(100)
        await db_session.execute(
            update(VirtualCard).where(VirtualCard.id == bad_id).values(balance=999)
        )
        await db_session.commit()

        mismatches = await ledger_service.reconcile_all(db_session)

        assert [m.card_id for m in mismatches] == [bad_id]
        assert mismatches[0].cached_balance == 999
        assert mismatches[0].computed_balance == 100
        assert (await ledger_service.reconcile(db_session, good_id)).consistent


class TestHistory:

    async def test_filters_and_order(self, db_session, card_factory):
        card_id = await card_factory(100)
        await ledger_service.apply_spend(db_session, card_id, 10, reference="a")
        await ledger_service.apply_spend(db_session, card_id, 20, reference="b")
        with pytest.raises(InsufficientBalanceError):
            await ledger_service.apply_spend(db_session, card_id, 500, reference="c")
        await db_session.commit()

        spends = await ledger_service.list_transactions(
            db_session, card_id, type_filter=TransactionType.SPEND
        )
        assert [t.reference for t in spends] == ["c", "b", "a"]

        completed = await ledger_service.list_transactions(
            db_session,
            card_id,
            status_filter=TransactionStatus.COMPLETED,
            type_filter=TransactionType.SPEND,
        )
        assert [t.reference for t in completed] == ["b", "a"]

        page = await ledger_service.list_transactions(db_session, card_id, limit=1, offset=1)
        assert len(page) == 1
