"""Business logic layer for Warung POS.

This module owns the runtime context (settings, live workbook, refresh
channel) and the upstream writers that feed the dashboard. Reads are served
from per-context caches; every writer validates its input, goes through the
data access layer, invalidates the affected caches and only then publishes
the matching signal so subscribers never observe a half-applied write.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log, set_log_level
from .constants import EXPECTED_SCHEMA_VERSION, PaymentMethod, Signal, UserRole
from .events import EventChannel


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or profile is unknown."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and channel used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    events: EventChannel = field(default_factory=EventChannel, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SaleCommand:
    """User intent for appending a transaction to the log."""

    total_amount: int
    payment_method: PaymentMethod
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when it is ``None``, the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the cache bucket named ``name``, creating it when missing.

    Buckets are plain dictionaries keyed by domain area (products,
    transactions, profile) so repeated dashboard refreshes do not rescan the
    workbook until a writer invalidates them.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug("Populated products cache with %d entries", len(all_products))
    return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        all_transactions = list(data_manager.iter_transactions(context.workbook))
        bucket["all"] = all_transactions
        log.debug("Populated transactions cache with %d entries", len(all_transactions))
    return bucket


def _notify(context: RuntimeContext, signal: Signal) -> None:
    delivered = context.events.publish(signal)
    log.debug("Signal '%s' reached %d subscriber(s)", signal.value, delivered)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    events: Optional[EventChannel] = None,
) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upwards from the
            current working directory.
        events (EventChannel | None): Channel writers should publish to. A
            private channel is created when omitted.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    set_log_level(settings.log_level)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    if events is None:
        return RuntimeContext(settings=settings, workbook=workbook)
    return RuntimeContext(settings=settings, workbook=workbook, events=events)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_products(context: RuntimeContext) -> List[data_manager.ProductRecord]:
    """Return a copy of the cached product rows in sheet order."""
    return list(_ensure_products_cache(context)["all"])


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRecord]:
    """Fetch the append-only transaction log from cache.

    The returned list is a shallow copy, so callers may sort or filter it
    without touching the shared cache. Entries stay in workbook order.
    """
    return list(_ensure_transactions_cache(context)["all"])


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRecord:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def get_user_profile(context: RuntimeContext) -> Optional[data_manager.UserProfile]:
    """Return the stored shop profile, or ``None`` when none was saved yet."""
    bucket = _get_cache_bucket(context, "profile")
    if "current" not in bucket:
        bucket["current"] = data_manager.read_user_profile(context.workbook)
    return bucket["current"]


def record_transaction(context: RuntimeContext, command: SaleCommand) -> data_manager.TransactionRecord:
    """Validate and append a transaction to the log.

    Once the row is in the workbook the transaction cache is dropped and
    ``transactions-changed`` is published.

    Args:
        context (RuntimeContext): Runtime context providing workbook access,
            caches and the refresh channel.
        command (SaleCommand): Amount, payment method and optional timestamp.

    Returns:
        data_manager.TransactionRecord: Newly appended transaction.

    Raises:
        BusinessRuleViolation: If the payment method is not supported.
        ValueError: When the amount is negative.
    """
    require_nonnegative_amount(command.total_amount)
    if not isinstance(command.payment_method, PaymentMethod):
        log.error("Unsupported payment method provided: %s", command.payment_method)
        raise BusinessRuleViolation(f"Unsupported payment method: {command.payment_method}")

    timestamp = _resolve_timestamp(command.timestamp)
    existing_ids = {entry.transaction_id for entry in _ensure_transactions_cache(context)["all"]}
    transaction = data_manager.TransactionRecord(
        transaction_id=generate_transaction_id(when=timestamp, taken=existing_ids),
        timestamp_ms=round(timestamp.timestamp() * 1000),
        total_amount=int(command.total_amount),
        payment_method=command.payment_method.value,
    )
    data_manager.append_transaction(context.workbook, transaction)
    _invalidate_cache(context, "transactions")
    log.info(
        "Recorded transaction '%s' (amount=%s, method=%s)",
        transaction.transaction_id,
        transaction.total_amount,
        transaction.payment_method,
    )
    _notify(context, Signal.TRANSACTIONS_CHANGED)
    return transaction


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    stock: int = 0,
    min_stock_alert: int = 0,
) -> data_manager.ProductRecord:
    """Register a new product and publish ``transactions-changed``.

    Raises:
        BusinessRuleViolation: If ``product_id`` is already registered.
        ValueError: When a stock figure is negative.
    """
    if product_id in _ensure_products_cache(context)["by_id"]:
        log.warning("Attempted to register duplicate product '%s'", product_id)
        raise BusinessRuleViolation(f"Product '{product_id}' already exists")
    require_nonnegative_quantity(stock)
    require_nonnegative_quantity(min_stock_alert)

    product = data_manager.ProductRecord(
        product_id=product_id,
        product_name=product_name,
        stock=int(stock),
        min_stock_alert=int(min_stock_alert),
    )
    data_manager.append_product(context.workbook, product)
    _invalidate_cache(context, "products")
    log.info("Registered product '%s' (stock=%s, min=%s)", product_id, stock, min_stock_alert)
    _notify(context, Signal.TRANSACTIONS_CHANGED)
    return product


def set_product_stock(context: RuntimeContext, product_id: str, stock: int) -> data_manager.ProductRecord:
    """Overwrite the on-hand stock of a product.

    Raises:
        MissingReferenceError: If the product is unknown.
        ValueError: When ``stock`` is negative.
    """
    product = get_product(context, product_id)
    require_nonnegative_quantity(stock)
    data_manager.update_product(context.workbook, product_id, field_values={"Stock": int(stock)})
    _invalidate_cache(context, "products")
    log.info("Set stock of product '%s' from %s to %s", product_id, product.stock, stock)
    _notify(context, Signal.TRANSACTIONS_CHANGED)
    return replace(product, stock=int(stock))


def adjust_product_stock(context: RuntimeContext, product_id: str, delta: int) -> data_manager.ProductRecord:
    """Apply a signed change to the stock of a product.

    Raises:
        MissingReferenceError: If the product is unknown.
        BusinessRuleViolation: If the change would leave negative stock.
    """
    product = get_product(context, product_id)
    new_stock = product.stock + int(delta)
    if new_stock < 0:
        log.warning(
            "Stock adjustment for '%s' rejected: %s %+d would go negative",
            product_id,
            product.stock,
            delta,
        )
        raise BusinessRuleViolation(f"Insufficient stock for product '{product_id}'")
    return set_product_stock(context, product_id, new_stock)


def save_user_profile(context: RuntimeContext, profile: data_manager.UserProfile) -> data_manager.UserProfile:
    """Store ``profile`` and publish ``profile-changed``.

    Raises:
        BusinessRuleViolation: If the role is not a known :class:`UserRole`.
    """
    try:
        UserRole(profile.role)
    except ValueError as exc:
        log.error("Unsupported role provided: %s", profile.role)
        raise BusinessRuleViolation(f"Unsupported role: {profile.role}") from exc

    data_manager.write_user_profile(context.workbook, profile)
    _invalidate_cache(context, "profile")
    log.info("Saved profile for warung '%s' (role=%s)", profile.warung_id, profile.role)
    _notify(context, Signal.PROFILE_CHANGED)
    return profile


def force_owner_role(context: RuntimeContext) -> data_manager.UserProfile:
    """Data-correction escape hatch that promotes the stored profile to owner.

    Raises:
        MissingReferenceError: If no profile has been saved yet.
    """
    profile = get_user_profile(context)
    if profile is None:
        log.warning("Role fix requested but no profile is stored")
        raise MissingReferenceError("No user profile stored")
    return save_user_profile(context, replace(profile, role=UserRole.OWNER.value))


def generate_transaction_id(*, when: Optional[datetime] = None, taken: Iterable[str] = ()) -> str:
    """Generate an identifier ``T{YYYYMMDDHHMMSSffffff}`` from the UTC moment.

    Naive moments are read as local time before conversion. When the base
    identifier is already in ``taken`` a ``-N`` suffix is appended, counting
    up from 2 until the identifier is free.
    """
    when = _resolve_timestamp(when).astimezone(UTC)
    base = f"T{when.strftime('%Y%m%d%H%M%S%f')}"
    taken = set(taken)
    candidate = base
    sequence = 2
    while candidate in taken:
        candidate = f"{base}-{sequence}"
        sequence += 1
    return candidate


def require_nonnegative_amount(amount: int) -> None:
    """Validate that a monetary amount is zero or positive.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < 0:
        log.error("Amount validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_nonnegative_quantity(quantity: int) -> None:
    if quantity < 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be zero or positive")


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    The new context keeps the same refresh channel, so existing subscribers
    keep receiving signals from writers using the reloaded context. Caches
    start empty.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, events=context.events)


class WorkbookRecordStore:
    """Read interface over a runtime context, as consumed by the dashboard."""

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    def get_transactions(self) -> Sequence[data_manager.TransactionRecord]:
        return list_transactions(self.context)

    def get_products(self) -> Sequence[data_manager.ProductRecord]:
        return list_products(self.context)

    def get_user_profile(self) -> Optional[data_manager.UserProfile]:
        return get_user_profile(self.context)
