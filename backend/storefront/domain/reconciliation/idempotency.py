"""
Idempotency Coordinator

Wraps a state-changing operation with a store-backed lock and a cached
result so that concurrent or repeated invocations under the same key
converge to a single execution.

Flow of ``execute_with_idempotency``:
1. Optional duplicate pre-validation over the identifying data.
2. Cached result lookup (fast replay path).
3. Compare-and-swap lock acquisition keyed by sha256(key + data).
4. If the lock is held elsewhere, poll at a fixed interval: replay the
   cached result as soon as it appears, or take over the lock once it is
   released or expired. Give up after ``max_retries`` polls.
5. Under the lock: re-check the cached result and (when pre-validation is
   on) duplicates, run the operation, store its result, release the lock.
6. Every path is written to the audit log with its duration.
"""

import asyncio
import hashlib
import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from storefront.domain.interfaces import AuditLogStore, IdempotencyStore, SubscriptionStore
from storefront.domain.reconciliation.duplicate_guard import find_duplicate
from storefront.domain.subscription import (
    AuditLogEntry,
    DuplicateCheckData,
    IdempotencyConfig,
    IdempotencyOutcome,
)


logger = logging.getLogger(__name__)

LOCK_TIMEOUT_MESSAGE = "Failed to acquire lock after retries"

Operation = Callable[[], Awaitable[Dict[str, Any]]]


def generate_lock_key(key: str, data: DuplicateCheckData) -> str:
    """Hash the idempotency key together with the identifying data."""
    payload = json.dumps(data.model_dump(exclude_none=True), sort_keys=True)
    return hashlib.sha256(f"{key}-{payload}".encode("utf-8")).hexdigest()


class IdempotencyCoordinator:
    """Serializes and deduplicates guarded operations through the store."""

    def __init__(
        self,
        idempotency_store: IdempotencyStore,
        subscription_store: SubscriptionStore,
        audit_store: AuditLogStore,
        retry_interval_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.idempotency_store = idempotency_store
        self.subscription_store = subscription_store
        self.audit_store = audit_store
        self.retry_interval_seconds = retry_interval_seconds
        self._sleep = sleep

    async def execute_with_idempotency(
        self,
        operation: Operation,
        config: IdempotencyConfig,
    ) -> IdempotencyOutcome[Dict[str, Any]]:
        """
        Run ``operation`` at most once per ``config.key``.

        Args:
            operation: Zero-argument coroutine factory returning a JSON-safe dict.
            config: Key, TTL, retry budget and identifying data.

        Returns:
            IdempotencyOutcome describing whether (and how) a result exists.

        Raises:
            Exception: Whatever ``operation`` raises, after the lock is released.
        """
        started = time.monotonic()
        lock_key = generate_lock_key(config.key, config.subscription_data)

        if config.enable_pre_validation:
            errors, duplicate = await self._pre_validate(config.subscription_data)
            if errors:
                await self._audit("duplicate_rejected", config, lock_key, started, False, errors=errors)
                logger.warning(f"Idempotent operation {config.key} rejected: {errors}")
                return IdempotencyOutcome(
                    is_processed=False,
                    duplicate_found=duplicate,
                    validation_errors=errors,
                )

        cached = await self._get_result(config.key)
        if cached is not None:
            await self._audit("result_retrieved", config, lock_key, started, True)
            return IdempotencyOutcome(is_processed=True, result=cached)

        owner = uuid.uuid4().hex
        acquired = await self._try_acquire(lock_key, owner, config.ttl_seconds)

        if not acquired:
            for _ in range(config.max_retries):
                await self._sleep(self.retry_interval_seconds)

                cached = await self._get_result(config.key)
                if cached is not None:
                    await self._audit("result_retrieved_after_wait", config, lock_key, started, True)
                    return IdempotencyOutcome(is_processed=True, result=cached)

                if await self._try_acquire(lock_key, owner, config.ttl_seconds):
                    acquired = True
                    break

        if not acquired:
            await self._audit("lock_timeout", config, lock_key, started, False)
            logger.warning(
                f"Could not acquire lock for {config.key} after {config.max_retries} retries"
            )
            return IdempotencyOutcome(
                is_processed=False,
                validation_errors=[LOCK_TIMEOUT_MESSAGE],
            )

        try:
            cached = await self._get_result(config.key)
            if cached is not None:
                await self._audit("result_retrieved", config, lock_key, started, True)
                return IdempotencyOutcome(is_processed=True, result=cached)

            if config.enable_pre_validation:
                reason = await self._check_duplicates(config.subscription_data)
                if reason:
                    await self._audit("duplicate_rejected", config, lock_key, started, False, reason=reason)
                    logger.warning(f"Duplicate found under lock for {config.key}: {reason}")
                    return IdempotencyOutcome(
                        is_processed=False,
                        lock_acquired=True,
                        duplicate_found=True,
                        validation_errors=[f"Duplicate found: {reason}"],
                    )

            try:
                result = await operation()
            except Exception as e:
                await self._audit("operation_failed", config, lock_key, started, False, error=str(e))
                logger.critical(
                    f"Idempotent operation {config.key} failed under lock: {e}",
                    exc_info=True,
                )
                raise

            await self._save_result(config.key, result, config.ttl_seconds)
            await self._audit("operation_completed", config, lock_key, started, True)

            return IdempotencyOutcome(is_processed=True, result=result, lock_acquired=True)
        finally:
            await self._release(lock_key, owner)

    # =========================================================================
    # Validation
    # =========================================================================

    async def _pre_validate(self, data: DuplicateCheckData):
        errors = []
        duplicate = False

        if not data.external_reference and not data.user_id:
            errors.append("external_reference or user_id is required for validation")

        reason = await self._check_duplicates(data)
        if reason:
            duplicate = True
            errors.append(f"Duplicate subscription found: {reason}")

        return errors, duplicate

    async def _check_duplicates(self, data: DuplicateCheckData) -> Optional[str]:
        try:
            return await find_duplicate(self.subscription_store, data)
        except Exception as e:
            logger.error(f"Duplicate check failed: {e}")
            return None

    # =========================================================================
    # Store access (failures are logged and treated as "nothing there")
    # =========================================================================

    async def _try_acquire(self, lock_key: str, owner: str, ttl_seconds: int) -> bool:
        try:
            await self.idempotency_store.purge_expired()
            return await self.idempotency_store.try_acquire(lock_key, owner, ttl_seconds)
        except Exception as e:
            logger.error(f"Lock acquisition failed for {lock_key[:12]}: {e}")
            return False

    async def _release(self, lock_key: str, owner: str) -> None:
        try:
            await self.idempotency_store.release(lock_key, owner)
        except Exception as e:
            logger.error(f"Lock release failed for {lock_key[:12]}: {e}")

    async def _get_result(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.idempotency_store.get_result(key)
        except Exception as e:
            logger.error(f"Cached result lookup failed for {key}: {e}")
            return None

    async def _save_result(self, key: str, result: Dict[str, Any], ttl_seconds: int) -> None:
        try:
            await self.idempotency_store.save_result(key, result, ttl_seconds)
        except Exception as e:
            logger.error(f"Storing result for {key} failed: {e}")

    async def _audit(
        self,
        event: str,
        config: IdempotencyConfig,
        lock_key: str,
        started: float,
        success: bool,
        **extra: Any,
    ) -> None:
        payload = {
            "key": config.key,
            "lock_key": lock_key,
            "subscription_data": config.subscription_data.model_dump(exclude_none=True),
            **extra,
        }
        try:
            await self.audit_store.append(AuditLogEntry(
                event_type=f"idempotency.{event}",
                source="idempotency",
                success=success,
                duration_ms=int((time.monotonic() - started) * 1000),
                payload=payload,
            ))
        except Exception as e:
            logger.error(f"Audit log write failed for idempotency.{event}: {e}")
