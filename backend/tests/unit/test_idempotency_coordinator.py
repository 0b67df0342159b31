"""
Unit tests for the idempotency coordinator.

Verifies:
- Single execution under concurrency
- Cached result replay
- Pre-validation and duplicate rejection
- Lock timeout and lock release on failure
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from storefront.domain.reconciliation import IdempotencyCoordinator, generate_lock_key
from storefront.domain.reconciliation.idempotency import LOCK_TIMEOUT_MESSAGE
from storefront.domain.subscription import DuplicateCheckData, IdempotencyConfig


@pytest.fixture
def coordinator(idempotency_store, subscription_store, audit_store):
    return IdempotencyCoordinator(
        idempotency_store,
        subscription_store,
        audit_store,
        retry_interval_seconds=0.01,
    )


def _config(key="op-1", **overrides):
    fields = {
        "key": key,
        "max_retries": 50,
        "enable_pre_validation": False,
        "subscription_data": DuplicateCheckData(user_id="u1", product_id="p1"),
    }
    fields.update(overrides)
    return IdempotencyConfig(**fields)


class TestLockKey:

    def test_deterministic_and_ignores_none(self):
        a = generate_lock_key("k", DuplicateCheckData(user_id="u1", product_id="p1"))
        b = generate_lock_key("k", DuplicateCheckData(product_id="p1", user_id="u1", payer_email=None))
        assert a == b
        assert len(a) == 64

    def test_depends_on_key(self):
        data = DuplicateCheckData(user_id="u1")
        assert generate_lock_key("a", data) != generate_lock_key("b", data)


class TestExecution:

    @pytest.mark.asyncio
    async def test_runs_operation_and_caches(self, coordinator, idempotency_store, audit_store):
        operation = AsyncMock(return_value={"value": 1})

        first = await coordinator.execute_with_idempotency(operation, _config())
        second = await coordinator.execute_with_idempotency(operation, _config())

        assert operation.await_count == 1
        assert first.is_processed and first.lock_acquired and not first.replayed
        assert second.is_processed and second.replayed
        assert second.result == {"value": 1}
        assert idempotency_store.locks == {}
        assert "idempotency.operation_completed" in audit_store.events
        assert "idempotency.result_retrieved" in audit_store.events

    @pytest.mark.asyncio
    async def test_concurrent_calls_execute_once(self, coordinator):
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return {"calls": calls}

        outcomes = await asyncio.gather(*[
            coordinator.execute_with_idempotency(operation, _config()) for _ in range(5)
        ])

        assert calls == 1
        assert all(o.is_processed for o in outcomes)
        assert all(o.result == {"calls": 1} for o in outcomes)
        assert sum(1 for o in outcomes if o.lock_acquired) == 1

    @pytest.mark.asyncio
    async def test_lock_timeout(self, coordinator, idempotency_store, audit_store):
        config = _config(max_retries=2)
        lock_key = generate_lock_key(config.key, config.subscription_data)
        await idempotency_store.try_acquire(lock_key, "someone-else", 300)
        operation = AsyncMock(return_value={})

        outcome = await coordinator.execute_with_idempotency(operation, config)

        assert outcome.is_processed is False
        assert LOCK_TIMEOUT_MESSAGE in outcome.validation_errors
        operation.assert_not_awaited()
        assert "idempotency.lock_timeout" in audit_store.events

    @pytest.mark.asyncio
    async def test_expired_lock_is_taken_over(self, coordinator, idempotency_store):
        config = _config()
        lock_key = generate_lock_key(config.key, config.subscription_data)
        await idempotency_store.try_acquire(lock_key, "crashed-worker", 0)
        operation = AsyncMock(return_value={"ok": True})

        outcome = await coordinator.execute_with_idempotency(operation, config)

        assert outcome.is_processed and outcome.lock_acquired
        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_releases_lock_and_propagates(self, coordinator, idempotency_store, audit_store):
        operation = AsyncMock(side_effect=RuntimeError("write failed"))

        with pytest.raises(RuntimeError):
            await coordinator.execute_with_idempotency(operation, _config())

        assert idempotency_store.locks == {}
        assert idempotency_store.results == {}
        assert "idempotency.operation_failed" in audit_store.events

    @pytest.mark.asyncio
    async def test_store_outage_degrades_to_lock_timeout(self, subscription_store, audit_store):
        store = AsyncMock()
        store.get_result.side_effect = ConnectionError("down")
        store.try_acquire.side_effect = ConnectionError("down")
        coordinator = IdempotencyCoordinator(
            store, subscription_store, audit_store, retry_interval_seconds=0
        )

        outcome = await coordinator.execute_with_idempotency(AsyncMock(), _config(max_retries=1))

        assert outcome.is_processed is False
        assert outcome.validation_errors == [LOCK_TIMEOUT_MESSAGE]


class TestPreValidation:

    @pytest.mark.asyncio
    async def test_requires_reference_or_user(self, coordinator):
        operation = AsyncMock()

        outcome = await coordinator.execute_with_idempotency(
            operation,
            _config(enable_pre_validation=True, subscription_data=DuplicateCheckData(product_id="p1")),
        )

        assert outcome.is_processed is False
        assert outcome.duplicate_found is False
        assert outcome.validation_errors
        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejects_duplicate(self, coordinator, make_subscription):
        make_subscription(user_id="u1", product_id="p1")
        operation = AsyncMock()

        outcome = await coordinator.execute_with_idempotency(
            operation, _config(enable_pre_validation=True)
        )

        assert outcome.is_processed is False
        assert outcome.duplicate_found is True
        assert "user_id + product_id match" in outcome.validation_errors[0]
        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_passes_when_no_duplicate(self, coordinator):
        operation = AsyncMock(return_value={"created": True})

        outcome = await coordinator.execute_with_idempotency(
            operation, _config(enable_pre_validation=True)
        )

        assert outcome.is_processed is True
        operation.assert_awaited_once()
