"""
Reconciliation engine tests
Partial payments, duplicate delivery, expiry and concurrent writers
"""

import asyncio
import pytest
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

from conftest import BASE_TIME, build_order, notification_for
from order_store import InMemoryOrderStore
from payment_errors import ConcurrentUpdateConflict, Expired, OrderIntegrityError, OrderNotFound
from payment_models import OrderStatus, WebhookOutcome
from services.reconciliation import ReconciliationEngine, apply_notification


class YieldingOrderStore(InMemoryOrderStore):
    """Suspends on every read so concurrent reconciliations interleave"""

    async def get(self, order_id):
        order = await super().get(order_id)
        await asyncio.sleep(0)
        return order


class TestApplyNotification:
    """Pure state transitions, no storage involved"""

    def test_full_payment_marks_paid(self):
        order = build_order(expected_amount=Decimal('0.5'))
        transition = apply_notification(order, notification_for(order, '0.5', 'tx-1'), BASE_TIME)

        assert transition.outcome == WebhookOutcome.ACCEPTED
        assert transition.order.status == OrderStatus.PAID
        assert transition.order.received_amount == Decimal('0.5')
        assert transition.order.confirmed_at == BASE_TIME
        assert transition.order.transaction_hash == 'tx-1'
        assert transition.applied_amount == Decimal('0.5')

    def test_partial_payment_marks_underpaid(self):
        order = build_order(expected_amount=Decimal('0.5'))
        transition = apply_notification(order, notification_for(order, '0.2', 'tx-1'), BASE_TIME)

        assert transition.order.status == OrderStatus.UNDERPAID
        assert transition.order.confirmed_at is None
        assert transition.order.seen_transaction_hashes == frozenset({'tx-1'})

    def test_exactness_one_unit_short_is_not_paid(self):
        order = build_order(expected_amount=Decimal('0.50000000'))
        transition = apply_notification(order, notification_for(order, '0.49999999', 'tx-1'), BASE_TIME)
        assert transition.order.status == OrderStatus.UNDERPAID

    def test_overpayment_satisfies(self):
        order = build_order(expected_amount=Decimal('0.5'))
        transition = apply_notification(order, notification_for(order, '0.75', 'tx-1'), BASE_TIME)
        assert transition.order.status == OrderStatus.PAID
        assert transition.order.received_amount == Decimal('0.75')

    def test_seen_hash_is_duplicate_without_change(self):
        order = build_order(
            status=OrderStatus.UNDERPAID,
            received_amount=Decimal('0.2'),
            seen_transaction_hashes=frozenset({'tx-1'}),
            transaction_hash='tx-1'
        )
        transition = apply_notification(order, notification_for(order, '0.2', 'tx-1'), BASE_TIME)
        assert transition.outcome == WebhookOutcome.DUPLICATE
        assert transition.order is None

    def test_replay_after_paid_is_duplicate(self):
        order = build_order(
            status=OrderStatus.PAID,
            received_amount=Decimal('0.5'),
            seen_transaction_hashes=frozenset({'tx-1'}),
            transaction_hash='tx-1',
            confirmed_at=BASE_TIME
        )
        transition = apply_notification(order, notification_for(order, '0.5', 'tx-1'), BASE_TIME)
        assert transition.outcome == WebhookOutcome.DUPLICATE

    def test_novel_notification_on_terminal_order_rejected(self):
        order = build_order(status=OrderStatus.EXPIRED)
        transition = apply_notification(order, notification_for(order, '0.5', 'tx-9'), BASE_TIME)
        assert transition.outcome == WebhookOutcome.REJECTED
        assert transition.order is None
        assert 'manual reconciliation' in transition.detail

    @pytest.mark.parametrize('field,value', [
        ('address', '0xdeadbeef'),
        ('currency', 'BTC'),
        ('network', 'ethereum-mainnet'),
        ('network', 'polygon'),
    ])
    def test_mismatched_notification_rejected(self, field, value):
        order = build_order()
        transition = apply_notification(order, notification_for(order, '0.5', 'tx-1', **{field: value}), BASE_TIME)
        assert transition.outcome == WebhookOutcome.REJECTED
        assert transition.order is None

    def test_short_network_name_matches_resolved_chain(self):
        order = build_order(network='ethereum-sepolia')
        transition = apply_notification(order, notification_for(order, '0.5', 'tx-1', network='ethereum'), BASE_TIME)
        assert transition.outcome == WebhookOutcome.ACCEPTED

    def test_late_notification_raises_expired(self):
        order = build_order()
        late = order.expires_at + timedelta(seconds=1)
        with pytest.raises(Expired) as exc_info:
            apply_notification(order, notification_for(order, '0.5', 'tx-1'), late)
        assert exc_info.value.code == 'ORDER_EXPIRED'

    def test_notification_at_deadline_still_counts(self):
        order = build_order()
        transition = apply_notification(order, notification_for(order, '0.5', 'tx-1'), order.expires_at)
        assert transition.order.status == OrderStatus.PAID

    def test_shortfall_below_storable_precision_rejected(self):
        order = build_order(expected_amount=Decimal('0.5'))
        transition = apply_notification(
            order, notification_for(order, '0.49999999999999999999999999999', 'tx-1'), BASE_TIME
        )
        assert transition.outcome == WebhookOutcome.REJECTED
        assert transition.order is None

    def test_smallest_storable_shortfall_stays_underpaid(self):
        order = build_order(expected_amount=Decimal('0.5'))
        transition = apply_notification(order, notification_for(order, '0.499999999999999999', 'tx-1'), BASE_TIME)
        assert transition.order.status == OrderStatus.UNDERPAID
        assert transition.order.received_amount < order.expected_amount

    def test_sum_wider_than_default_context_is_not_rounded_up(self):
        order = build_order(
            expected_amount=Decimal('100000000000'),
            received_amount=Decimal('99999999999.9'),
            status=OrderStatus.UNDERPAID,
            seen_transaction_hashes=frozenset({'tx-0'})
        )
        transition = apply_notification(order, notification_for(order, '0.099999999999999999', 'tx-1'), BASE_TIME)

        assert transition.order.status == OrderStatus.UNDERPAID
        assert transition.order.received_amount == Decimal('99999999999.999999999999999999')

    def test_corrupt_record_raises_integrity_error(self):
        order = build_order(status=OrderStatus.PAID, received_amount=Decimal('0.1'),
                            seen_transaction_hashes=frozenset({'tx-0'}))
        with pytest.raises(OrderIntegrityError):
            apply_notification(order, notification_for(order, '0.5', 'tx-1'), BASE_TIME)


@pytest.mark.asyncio
class TestReconciliationEngine:
    """Engine behaviour against the in-memory order store"""

    async def test_exact_payment_marks_paid(self, engine, order_store, pending_order):
        result = await engine.reconcile(pending_order.id, notification_for(pending_order, '0.5', 'tx-1'))

        assert result.outcome == WebhookOutcome.ACCEPTED
        stored = await order_store.get(pending_order.id)
        assert stored.status == OrderStatus.PAID
        assert stored.received_amount == Decimal('0.5')
        assert stored.confirmed_at is not None

    async def test_partial_payment_then_completion(self, engine, order_store, pending_order):
        first = await engine.reconcile(pending_order.id, notification_for(pending_order, '0.2', 'tx-1'))
        assert first.order.status == OrderStatus.UNDERPAID
        assert first.order.received_amount == Decimal('0.2')

        second = await engine.reconcile(pending_order.id, notification_for(pending_order, '0.3', 'tx-2'))
        assert second.order.status == OrderStatus.PAID
        assert second.order.received_amount == Decimal('0.5')
        assert second.order.seen_transaction_hashes == frozenset({'tx-1', 'tx-2'})

    async def test_duplicate_delivery_not_counted_twice(self, engine, order_store, pending_order):
        await engine.reconcile(pending_order.id, notification_for(pending_order, '0.2', 'tx-1'))
        replay = await engine.reconcile(pending_order.id, notification_for(pending_order, '0.2', 'tx-1'))

        assert replay.outcome == WebhookOutcome.DUPLICATE
        stored = await order_store.get(pending_order.id)
        assert stored.received_amount == Decimal('0.2')
        assert stored.status == OrderStatus.UNDERPAID

    async def test_top_up_completes_and_replay_after_paid_is_duplicate(self, engine, order_store):
        order = await order_store.create(build_order(expected_amount=Decimal('1.000000')))

        first = await engine.reconcile(order.id, notification_for(order, '0.4', '0xAA'))
        assert first.order.status == OrderStatus.UNDERPAID
        assert first.order.received_amount == Decimal('0.4')

        second = await engine.reconcile(order.id, notification_for(order, '0.6', '0xBB'))
        assert second.order.status == OrderStatus.PAID
        assert second.order.received_amount == Decimal('1.0')

        replay = await engine.reconcile(order.id, notification_for(order, '0.4', '0xAA'))
        assert replay.outcome == WebhookOutcome.DUPLICATE
        stored = await order_store.get(order.id)
        assert stored.status == OrderStatus.PAID
        assert stored.received_amount == Decimal('1.0')

    async def test_near_miss_stays_underpaid_without_tolerance(self, engine, order_store, clock):
        order = await order_store.create(build_order(expected_amount=Decimal('50.00')))

        result = await engine.reconcile(order.id, notification_for(order, '49.99', '0xCC'))
        assert result.outcome == WebhookOutcome.ACCEPTED
        assert result.order.status == OrderStatus.UNDERPAID

        clock.advance(60)
        stored = await order_store.get(order.id)
        assert stored.status == OrderStatus.UNDERPAID
        assert stored.received_amount == Decimal('49.99')

    async def test_idempotence_many_replays(self, engine, order_store, pending_order):
        notification = notification_for(pending_order, '0.1', 'tx-1')
        for _ in range(5):
            await engine.reconcile(pending_order.id, notification)

        stored = await order_store.get(pending_order.id)
        assert stored.received_amount == Decimal('0.1')
        # Only the first application bumps the version
        assert stored.version == 1

    async def test_monotonic_received_amount(self, engine, order_store, pending_order):
        seen = []
        for index, amount in enumerate(['0.1', '0.05', '0.1', '0.2']):
            result = await engine.reconcile(pending_order.id, notification_for(pending_order, amount, f"tx-{index}"))
            seen.append(result.order.received_amount)
        assert seen == sorted(seen)
        assert seen[-1] == Decimal('0.45')

    async def test_expiry_finality(self, order_store, pending_order, clock):
        engine = ReconciliationEngine(order_store, retry_backoff=0, clock=clock)
        clock.advance(31 * 60)

        result = await engine.reconcile(pending_order.id, notification_for(pending_order, '0.5', 'tx-1'))
        assert result.outcome == WebhookOutcome.REJECTED
        assert result.order.status == OrderStatus.EXPIRED

        again = await engine.reconcile(pending_order.id, notification_for(pending_order, '0.5', 'tx-2'))
        assert again.outcome == WebhookOutcome.REJECTED
        stored = await order_store.get(pending_order.id)
        assert stored.status == OrderStatus.EXPIRED
        assert stored.received_amount == Decimal('0')

    async def test_paid_order_stays_paid(self, engine, order_store, pending_order):
        await engine.reconcile(pending_order.id, notification_for(pending_order, '0.5', 'tx-1'))
        extra = await engine.reconcile(pending_order.id, notification_for(pending_order, '1.0', 'tx-2'))

        assert extra.outcome == WebhookOutcome.REJECTED
        stored = await order_store.get(pending_order.id)
        assert stored.status == OrderStatus.PAID
        assert stored.received_amount == Decimal('0.5')

    async def test_concurrent_duplicate_deliveries_apply_once(self, pending_order, clock):
        order_store = YieldingOrderStore()
        await order_store.create(replace(pending_order))
        engine = ReconciliationEngine(order_store, retry_backoff=0, clock=clock)
        notification = notification_for(pending_order, '0.2', 'tx-1')
        results = await asyncio.gather(*[engine.reconcile(pending_order.id, notification) for _ in range(10)])

        outcomes = [r.outcome for r in results]
        assert outcomes.count(WebhookOutcome.ACCEPTED) == 1
        assert outcomes.count(WebhookOutcome.DUPLICATE) == 9
        stored = await order_store.get(pending_order.id)
        assert stored.received_amount == Decimal('0.2')

    async def test_concurrent_distinct_payments_all_counted(self, pending_order, clock):
        order_store = YieldingOrderStore()
        await order_store.create(replace(pending_order))
        engine = ReconciliationEngine(order_store, retry_backoff=0, clock=clock)
        notifications = [notification_for(pending_order, '0.1', f"tx-{i}") for i in range(4)]
        await asyncio.gather(*[engine.reconcile(pending_order.id, n) for n in notifications])

        stored = await order_store.get(pending_order.id)
        assert stored.received_amount == Decimal('0.4')
        assert stored.status == OrderStatus.UNDERPAID
        assert len(stored.seen_transaction_hashes) == 4

    async def test_conflict_retries_exhausted_raise(self, order_store, pending_order, clock):
        class AlwaysConflicting(InMemoryOrderStore):
            async def compare_and_swap(self, order, expected_version):
                raise ConcurrentUpdateConflict("lost race")

        store = AlwaysConflicting()
        await store.create(replace(pending_order))
        engine = ReconciliationEngine(store, max_retries=3, retry_backoff=0, clock=clock)

        with pytest.raises(ConcurrentUpdateConflict):
            await engine.reconcile(pending_order.id, notification_for(pending_order, '0.5', 'tx-1'))
        stored = await store.get(pending_order.id)
        assert stored.received_amount == Decimal('0')

    async def test_unknown_order_raises(self, engine):
        order = build_order()
        with pytest.raises(OrderNotFound):
            await engine.reconcile(order.id, notification_for(order, '0.5', 'tx-1'))

    async def test_corrupt_order_marked_failed(self, engine, order_store):
        corrupt = build_order(received_amount=Decimal('0.3'), seen_transaction_hashes=frozenset({'tx-0'}))
        await order_store.create(corrupt)

        result = await engine.reconcile(corrupt.id, notification_for(corrupt, '0.5', 'tx-1'))
        assert result.outcome == WebhookOutcome.ERROR
        stored = await order_store.get(corrupt.id)
        assert stored.status == OrderStatus.FAILED
        assert stored.failure_reason
        assert stored.received_amount == Decimal('0.3')
