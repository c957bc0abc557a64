"""Refresh channel carrying change notifications between writers and views.

Writers publish :attr:`Signal.TRANSACTIONS_CHANGED` once a transaction or
stock mutation has been committed and :attr:`Signal.PROFILE_CHANGED` after a
profile update. Views subscribe while they are active and cancel their
subscriptions when they go away. Delivery is synchronous, in subscription
order, and every publish reaches every current subscriber; nothing is merged
or debounced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from . import log
from .constants import Signal


Handler = Callable[[], None]


@dataclass(eq=False)
class Subscription:
    """Handle returned by :meth:`EventChannel.subscribe`."""

    channel: "EventChannel"
    signal: Signal
    handler: Handler
    active: bool = True

    def cancel(self) -> None:
        """Stop receiving the signal. Cancelling twice is harmless."""
        self.channel.unsubscribe(self)


@dataclass
class EventChannel:
    """Multi-subscriber notification channel keyed by :class:`Signal`."""

    _subscriptions: Dict[Signal, List[Subscription]] = field(default_factory=dict, repr=False)

    def subscribe(self, signal: Signal, handler: Handler) -> Subscription:
        """Register ``handler`` to be called on every publish of ``signal``."""
        signal = Signal(signal)
        subscription = Subscription(channel=self, signal=signal, handler=handler)
        self._subscriptions.setdefault(signal, []).append(subscription)
        log.debug("Subscribed handler to '%s' (%d total)", signal.value, self.subscriber_count(signal))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        subscription.active = False
        handlers = self._subscriptions.get(subscription.signal, [])
        if subscription in handlers:
            handlers.remove(subscription)
        log.debug(
            "Unsubscribed handler from '%s' (%d remaining)",
            subscription.signal.value,
            self.subscriber_count(subscription.signal),
        )

    def publish(self, signal: Signal) -> int:
        """Deliver ``signal`` to its current subscribers.

        The subscriber list is copied before delivery, so a handler may cancel
        its own or another subscription while the signal is in flight; a
        subscription cancelled mid-delivery is skipped. Exceptions raised by a
        handler propagate to the publisher.

        Returns:
            int: Number of handlers invoked.
        """
        signal = Signal(signal)
        delivered = 0
        for subscription in list(self._subscriptions.get(signal, [])):
            if not subscription.active:
                continue
            subscription.handler()
            delivered += 1
        log.debug("Published '%s' to %d handler(s)", signal.value, delivered)
        return delivered

    def subscriber_count(self, signal: Signal) -> int:
        return len(self._subscriptions.get(Signal(signal), []))


_DEFAULT_CHANNEL: Optional[EventChannel] = None


def default_channel() -> EventChannel:
    """Return the process-wide channel, creating it on first use."""
    global _DEFAULT_CHANNEL
    if _DEFAULT_CHANNEL is None:
        _DEFAULT_CHANNEL = EventChannel()
    return _DEFAULT_CHANNEL
