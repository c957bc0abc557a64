"""Aggregation engine behind the shop dashboard.

Everything in this module is a pure function of its arguments. Callers pass
the current instant together with already materialized transactions and
products, and receive a freshly built :class:`DashboardSnapshot`. Nothing is
read from a global clock or store, and nothing is cached between calls, so
two calls with identical inputs always produce equal snapshots.

Calendar windows follow the calendar of ``now``: a naive ``now`` is read as
local wall-clock time, an aware ``now`` pins the calendar to its ``tzinfo``.
Transaction timestamps are millisecond epochs and are compared against the
window boundaries converted to the same unit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Sequence

from . import log
from .constants import MILLISECONDS_PER_DAY, SERIES_DAYS, PaymentMethod
from .data_manager import ProductRecord, TransactionRecord


WeekdayFormatter = Callable[[datetime], str]

# datetime.weekday(): Monday is 0.
_INDONESIAN_WEEKDAYS = ("Sen", "Sel", "Rab", "Kam", "Jum", "Sab", "Min")
_ENGLISH_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

_KNOWN_METHODS = frozenset(method.value for method in PaymentMethod)


class DataIntegrityError(ValueError):
    """Raised when records handed to the engine break the store contract."""


@dataclass(frozen=True)
class MethodTotals:
    """Today's revenue split across the three payment methods."""

    cash: int = 0
    qris: int = 0
    debt: int = 0

    def total(self) -> int:
        return self.cash + self.qris + self.debt


@dataclass(frozen=True)
class DailySales:
    """One bar of the rolling seven day series."""

    label: str
    sales_total: int


@dataclass(frozen=True)
class DashboardSnapshot:
    """Materialized dashboard metrics for a single instant.

    A snapshot is a value: it is rebuilt from scratch on every computation and
    replaced wholesale by the next one.
    """

    today_sales: int
    month_sales: int
    total_transactions: int
    low_stock_count: int
    today_method_totals: MethodTotals
    seven_day_series: tuple[DailySales, ...]


def indonesian_weekday_abbrev(day: datetime) -> str:
    """Return the short Indonesian weekday name (``Sen`` .. ``Min``)."""

    return _INDONESIAN_WEEKDAYS[day.weekday()]


def english_weekday_abbrev(day: datetime) -> str:
    """Return the short English weekday name (``Mon`` .. ``Sun``)."""

    return _ENGLISH_WEEKDAYS[day.weekday()]


WEEKDAY_FORMATTERS: Dict[str, WeekdayFormatter] = {
    "id": indonesian_weekday_abbrev,
    "en": english_weekday_abbrev,
}


def weekday_formatter(name: str) -> WeekdayFormatter:
    """Resolve a weekday formatter by its configuration name.

    Args:
        name (str): Either ``"id"`` or ``"en"``, case insensitive.

    Returns:
        WeekdayFormatter: Callable turning a day into its short label.

    Raises:
        KeyError: If ``name`` is not a known formatter.
    """

    try:
        return WEEKDAY_FORMATTERS[name.strip().lower()]
    except KeyError as exc:
        log.error("Unknown weekday label set '%s'", name)
        raise KeyError(f"Unknown weekday label set: {name}") from exc


def start_of_day(moment: datetime) -> datetime:
    """Midnight of the calendar day containing ``moment``."""

    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(moment: datetime) -> datetime:
    """Midnight of the first day of the month containing ``moment``."""

    return start_of_day(moment).replace(day=1)


def to_epoch_ms(moment: datetime) -> int:
    """Convert ``moment`` to a millisecond epoch, naive values read as local time."""

    return round(moment.timestamp() * 1000)


def is_low_stock(product: ProductRecord) -> bool:
    """A product is low on stock once it reaches its alert threshold."""

    return product.stock <= product.min_stock_alert


def count_low_stock(products: Iterable[ProductRecord]) -> int:
    return sum(1 for product in products if is_low_stock(product))


def sum_since(transactions: Iterable[TransactionRecord], start_ms: int) -> int:
    """Sum amounts of transactions stamped at or after ``start_ms``.

    The window has no upper bound, so timestamps in the future still count.
    """

    return sum(t.total_amount for t in transactions if t.timestamp_ms >= start_ms)


def sum_between(transactions: Iterable[TransactionRecord], start_ms: int, end_ms: int) -> int:
    """Sum amounts of transactions inside the half-open ``[start_ms, end_ms)``."""

    return sum(t.total_amount for t in transactions if start_ms <= t.timestamp_ms < end_ms)


def method_totals_since(transactions: Iterable[TransactionRecord], start_ms: int) -> MethodTotals:
    """Group the amounts of transactions since ``start_ms`` by payment method.

    Only the three known methods have a bucket. A transaction carrying any
    other value is dropped without complaint; see :func:`validate_records`
    for the strict alternative.
    """

    buckets = {method.value: 0 for method in PaymentMethod}
    for transaction in transactions:
        if transaction.timestamp_ms < start_ms:
            continue
        if transaction.payment_method in buckets:
            buckets[transaction.payment_method] += transaction.total_amount
    return MethodTotals(
        cash=buckets[PaymentMethod.CASH.value],
        qris=buckets[PaymentMethod.QRIS.value],
        debt=buckets[PaymentMethod.DEBT.value],
    )


def build_seven_day_series(
    now: datetime,
    transactions: Sequence[TransactionRecord],
    *,
    weekday_label: WeekdayFormatter = indonesian_weekday_abbrev,
) -> tuple[DailySales, ...]:
    """Build the rolling seven day sales series ending today.

    For every day from six days ago up to today the window starts at that
    day's midnight and spans exactly 24 hours, whatever the DST rules of the
    calendar say. The result always has seven entries, oldest first.

    Args:
        now (datetime): Current instant; its calendar decides the day edges.
        transactions (Sequence[TransactionRecord]): Full transaction log.
        weekday_label (WeekdayFormatter): Formatter for the day labels.

    Returns:
        tuple[DailySales, ...]: Seven labelled daily totals.
    """

    series: List[DailySales] = []
    for offset in range(SERIES_DAYS - 1, -1, -1):
        day = now - timedelta(days=offset)
        day_start_ms = to_epoch_ms(start_of_day(day))
        day_end_ms = day_start_ms + MILLISECONDS_PER_DAY
        series.append(
            DailySales(
                label=weekday_label(day),
                sales_total=sum_between(transactions, day_start_ms, day_end_ms),
            )
        )
    return tuple(series)


def validate_records(
    transactions: Iterable[TransactionRecord],
    products: Iterable[ProductRecord],
) -> None:
    """Check records against the store contract before aggregating.

    Raises:
        DataIntegrityError: On the first transaction with an unknown payment
            method or a negative amount, or the first product with a negative
            stock level or alert threshold.
    """

    for transaction in transactions:
        if transaction.payment_method not in _KNOWN_METHODS:
            log.error(
                "Transaction '%s' carries unknown payment method '%s'",
                transaction.transaction_id,
                transaction.payment_method,
            )
            raise DataIntegrityError(
                f"Transaction '{transaction.transaction_id}' has unknown payment method "
                f"'{transaction.payment_method}'"
            )
        if transaction.total_amount < 0:
            log.error("Transaction '%s' has negative amount %s", transaction.transaction_id, transaction.total_amount)
            raise DataIntegrityError(f"Transaction '{transaction.transaction_id}' has a negative amount")

    for product in products:
        if product.stock < 0 or product.min_stock_alert < 0:
            log.error(
                "Product '%s' has negative stock figures (stock=%s, min=%s)",
                product.product_id,
                product.stock,
                product.min_stock_alert,
            )
            raise DataIntegrityError(f"Product '{product.product_id}' has negative stock figures")


def compute_snapshot(
    now: datetime,
    transactions: Sequence[TransactionRecord],
    products: Sequence[ProductRecord],
    *,
    weekday_label: WeekdayFormatter = indonesian_weekday_abbrev,
    strict: bool = False,
) -> DashboardSnapshot:
    """Compute every dashboard metric for ``now`` in one call.

    Each metric scans the transaction log on its own, which keeps the window
    rules easy to audit and is cheap at shop scale since recomputation only
    happens on activation and on change notifications.

    Args:
        now (datetime): Current instant supplied by the caller.
        transactions (Sequence[TransactionRecord]): Entire transaction log.
        products (Sequence[ProductRecord]): Current inventory.
        weekday_label (WeekdayFormatter): Labels for the seven day series.
        strict (bool): Run :func:`validate_records` first instead of trusting
            the store contract.

    Returns:
        DashboardSnapshot: Newly built snapshot.

    Raises:
        DataIntegrityError: Only when ``strict`` is set and a record is
            malformed.
    """

    if strict:
        validate_records(transactions, products)

    day_start_ms = to_epoch_ms(start_of_day(now))
    month_start_ms = to_epoch_ms(start_of_month(now))

    snapshot = DashboardSnapshot(
        today_sales=sum_since(transactions, day_start_ms),
        month_sales=sum_since(transactions, month_start_ms),
        total_transactions=len(transactions),
        low_stock_count=count_low_stock(products),
        today_method_totals=method_totals_since(transactions, day_start_ms),
        seven_day_series=build_seven_day_series(now, transactions, weekday_label=weekday_label),
    )
    log.debug(
        "Computed snapshot at %s: today=%s month=%s transactions=%d low_stock=%d",
        now.isoformat(),
        snapshot.today_sales,
        snapshot.month_sales,
        snapshot.total_transactions,
        snapshot.low_stock_count,
    )
    return snapshot
