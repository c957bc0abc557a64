"""Dashboard host composing the record store, engine, channel and alert.

The host pulls records from a :class:`RecordSource`, asks the aggregation
engine for a snapshot, and keeps the latest snapshot, profile and low-stock
alert for whatever presentation layer sits on top. It listens to the refresh
channel only between :meth:`DashboardHost.activate` and
:meth:`DashboardHost.deactivate`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

from . import log
from .aggregation import (
    DashboardSnapshot,
    WeekdayFormatter,
    compute_snapshot,
    indonesian_weekday_abbrev,
)
from .alerts import LowStockAlert
from .constants import Signal
from .data_manager import ProductRecord, TransactionRecord, UserProfile
from .events import EventChannel, Subscription


Clock = Callable[[], datetime]


class RecordSource(Protocol):
    """Read accessors the dashboard needs from the record store."""

    def get_transactions(self) -> Sequence[TransactionRecord]:
        ...

    def get_products(self) -> Sequence[ProductRecord]:
        ...

    def get_user_profile(self) -> Optional[UserProfile]:
        ...


def local_now() -> datetime:
    """Current local wall-clock time, the default dashboard clock."""
    return datetime.now()


class DashboardHost:
    """Keeps a dashboard snapshot current while the dashboard is active."""

    def __init__(
        self,
        source: RecordSource,
        channel: EventChannel,
        *,
        clock: Clock = local_now,
        weekday_label: WeekdayFormatter = indonesian_weekday_abbrev,
        strict: bool = False,
        alert: Optional[LowStockAlert] = None,
    ) -> None:
        self.source = source
        self.channel = channel
        self.clock = clock
        self.weekday_label = weekday_label
        self.strict = strict
        self.alert = alert if alert is not None else LowStockAlert()
        self.snapshot: Optional[DashboardSnapshot] = None
        self.profile: Optional[UserProfile] = None
        self._subscriptions: list[Subscription] = []

    @property
    def is_active(self) -> bool:
        return bool(self._subscriptions)

    def activate(self) -> DashboardSnapshot:
        """Subscribe to both signals, load the profile and compute once.

        Activating an already active host only recomputes.
        """
        if not self.is_active:
            self._subscriptions = [
                self.channel.subscribe(Signal.TRANSACTIONS_CHANGED, self._on_transactions_changed),
                self.channel.subscribe(Signal.PROFILE_CHANGED, self._on_profile_changed),
            ]
            log.info("Dashboard activated")
        self.reload_profile()
        return self.refresh()

    def deactivate(self) -> None:
        """Cancel the subscriptions; the held snapshot stays readable."""
        if not self.is_active:
            return
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []
        log.info("Dashboard deactivated")

    def refresh(self) -> DashboardSnapshot:
        """Recompute the snapshot from a consistent read of the store.

        Transactions and products are copied into tuples before the engine
        runs so a single computation never sees a store that changes under it.
        The low-stock alert is evaluated right after the snapshot is replaced.
        """
        transactions = tuple(self.source.get_transactions())
        products = tuple(self.source.get_products())
        snapshot = compute_snapshot(
            self.clock(),
            transactions,
            products,
            weekday_label=self.weekday_label,
            strict=self.strict,
        )
        self.snapshot = snapshot
        self.alert.evaluate(snapshot)
        log.debug("Dashboard snapshot replaced (%d transactions)", snapshot.total_transactions)
        return snapshot

    def reload_profile(self) -> Optional[UserProfile]:
        self.profile = self.source.get_user_profile()
        return self.profile

    def dismiss_alert(self) -> None:
        self.alert.dismiss()

    def _on_transactions_changed(self) -> None:
        self.refresh()

    def _on_profile_changed(self) -> None:
        self.reload_profile()
