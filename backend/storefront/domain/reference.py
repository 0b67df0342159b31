"""
External Reference Generator

Derives the correlation identifier ("external reference") shared between a
subscription record and the payment provider. References are
``<prefix>-<user_id>-<product_id>-<hash>`` where ``hash`` is the first 8 hex
characters of a SHA-256 digest over ``user_id:product_id:kind[:email][:bucket]``.
When the formatted value exceeds ``max_length`` the hash-only form
``<prefix>-<hash>`` is used instead.

Without a timestamp the output is a pure function of its inputs, which is
what lets a repeated checkout collide with (and reuse) the first attempt.
"""

import hashlib
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from storefront.domain.subscription import ReferenceKind


HASH_LENGTH = 8


@dataclass(frozen=True)
class ReferenceComponents:
    """Identifying parts of a subscription intent."""
    user_id: str
    product_id: str
    kind: ReferenceKind = ReferenceKind.NEW
    user_email: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ReferenceOptions:
    """Formatting and uniqueness options."""
    include_timestamp: bool = False
    include_user_email: bool = False
    max_length: int = 64
    prefix: str = "SUB"
    time_window_minutes: int = 5


# Named presets
NEW_SUBSCRIPTION = ReferenceOptions(include_timestamp=True, time_window_minutes=5)
REACTIVATION = ReferenceOptions(include_timestamp=False, include_user_email=True)
RENEWAL = ReferenceOptions(include_timestamp=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReferenceGenerator:
    """Pure generator of external references with preset intents."""

    def __init__(
        self,
        prefix: str = "SUB",
        max_length: int = 64,
        time_window_minutes: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.prefix = prefix
        self.max_length = max_length
        self.time_window_minutes = time_window_minutes
        self._clock = clock

    def generate(
        self,
        components: ReferenceComponents,
        options: Optional[ReferenceOptions] = None,
    ) -> str:
        """
        Generate an external reference.

        Args:
            components: User, product and intent (plus optional email/timestamp).
            options: Formatting options. Defaults to a deterministic reference
                with this generator's prefix and length limit.

        Returns:
            The formatted reference string.
        """
        options = options or ReferenceOptions(
            prefix=self.prefix,
            max_length=self.max_length,
            time_window_minutes=self.time_window_minutes,
        )

        base = f"{components.user_id}:{components.product_id}:{_kind_value(components.kind)}"

        if options.include_user_email and components.user_email:
            base += f":{components.user_email.strip().lower()}"

        if options.include_timestamp:
            moment = components.timestamp or self._clock()
            base += f":{_time_bucket(moment, options.time_window_minutes)}"

        digest = hashlib.sha256(base.encode("utf-8")).hexdigest()[:HASH_LENGTH]

        reference = f"{options.prefix}-{components.user_id}-{components.product_id}-{digest}"
        if len(reference) > options.max_length:
            return f"{options.prefix}-{digest}"
        return reference

    # =========================================================================
    # Presets
    # =========================================================================

    def new_subscription(self, components: ReferenceComponents) -> str:
        """Time-bucketed reference for a definitely-new intent."""
        return self.generate(
            replace(components, kind=ReferenceKind.NEW),
            self._preset(NEW_SUBSCRIPTION),
        )

    def reactivation(self, components: ReferenceComponents) -> str:
        """Reproducible reference from (user, product, email) alone."""
        return self.generate(
            replace(components, kind=ReferenceKind.REACTIVATION, timestamp=None),
            self._preset(REACTIVATION),
        )

    def renewal(self, components: ReferenceComponents) -> str:
        return self.generate(
            replace(components, kind=ReferenceKind.RENEWAL, timestamp=None),
            self._preset(RENEWAL),
        )

    def variants(self, components: ReferenceComponents, hours: int = 24) -> List[str]:
        """
        Every reference an earlier checkout for these components could have used.

        Covers the deterministic forms (with and without email) and the
        time-bucketed forms for hourly and 5-minute windows over the last
        ``hours`` hours. Order is stable and duplicates are removed.
        """
        found: List[str] = [
            self.generate(components, self._preset(ReferenceOptions())),
        ]
        if components.user_email:
            found.append(
                self.generate(components, self._preset(ReferenceOptions(include_user_email=True)))
            )

        now = self._clock()
        for offset in range(hours):
            moment = now - timedelta(hours=offset)
            stamped = replace(components, timestamp=moment)
            for window in (60, 5):
                found.append(
                    self.generate(
                        stamped,
                        self._preset(ReferenceOptions(include_timestamp=True, time_window_minutes=window)),
                    )
                )

        return list(dict.fromkeys(found))

    def verify(
        self,
        reference: str,
        components: ReferenceComponents,
        options: Optional[ReferenceOptions] = None,
    ) -> bool:
        """Check that ``reference`` is what these components produce."""
        return reference == self.generate(components, options)

    def _preset(self, preset: ReferenceOptions) -> ReferenceOptions:
        return replace(preset, prefix=self.prefix, max_length=self.max_length)


def _kind_value(kind) -> str:
    return kind.value if isinstance(kind, ReferenceKind) else str(kind)


def _time_bucket(moment: datetime, window_minutes: int) -> int:
    """Collapse a timestamp to the start of its window (epoch seconds)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    window = max(window_minutes, 1) * 60
    epoch = int(moment.timestamp())
    return epoch - epoch % window
