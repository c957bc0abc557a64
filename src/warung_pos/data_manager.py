"""Data access layer for the Warung POS workbook.

This module provides low-level helpers that read from and write to the
``warung_master_data.xlsx`` workbook acting as the shop's record store.
Aggregation and business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
PROFILE_SHEET = SheetName.PROFILE.value

DEFAULT_WEEKDAY_LABELS = "id"
DEFAULT_LOG_LEVEL = "INFO"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    weekday_labels: str = DEFAULT_WEEKDAY_LABELS
    strict_validation: bool = False
    log_level: str = DEFAULT_LOG_LEVEL


@dataclass(frozen=True)
class ProductRecord:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    stock: int
    min_stock_alert: int


@dataclass(frozen=True)
class TransactionRecord:
    """In-memory view of a row from the ``Transactions`` sheet.

    ``timestamp_ms`` is a millisecond epoch and ``total_amount`` is expressed
    in whole currency units.
    """

    transaction_id: str
    timestamp_ms: int
    total_amount: int
    payment_method: str


@dataclass(frozen=True)
class UserProfile:
    """In-memory view of the single row stored on the ``Profile`` sheet."""

    warung_id: str
    role: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory looking for a file named ``CONFIG_FILE_NAME``; the first
    match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Dashboard]`` section is
    optional and only tunes how the aggregation engine labels weekdays and
    whether it validates records before computing. ``[Logging] Level`` is
    optional as well and defaults to INFO. Relative ``DataFile``
    entries are anchored to ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required entry is missing, ``StrictValidation`` is
            not a boolean or ``Level`` is not a logging level name.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    weekday_labels = parser.get("Dashboard", "WeekdayLabels", fallback=DEFAULT_WEEKDAY_LABELS)
    try:
        strict_validation = parser.getboolean("Dashboard", "StrictValidation", fallback=False)
    except ValueError as exc:
        raise KeyError(f"Invalid configuration entry Dashboard.StrictValidation: {exc}") from exc
    log_level = parser.get("Logging", "Level", fallback=DEFAULT_LOG_LEVEL).strip().upper()
    if log_level not in LOG_LEVELS:
        raise KeyError(f"Invalid configuration entry Logging.Level: {log_level}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        weekday_labels=weekday_labels.strip().lower(),
        strict_validation=strict_validation,
        log_level=log_level,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    log.debug("Opened workbook '%s'", data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_products(workbook: Workbook) -> Iterable[ProductRecord]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The header row and fully empty rows are skipped.

    Yields:
        ProductRecord: One structured row for each meaningful record.
    """

    sheet = workbook[PRODUCTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_product(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRecord]:
    """Stream transaction records from the ``Transactions`` worksheet.

    Rows come back in sheet order, which is the append order of the log.

    Yields:
        TransactionRecord: Normalized transaction record for each populated row.
    """

    sheet = workbook[TRANSACTIONS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_transaction(raw)


def read_user_profile(workbook: Workbook) -> Optional[UserProfile]:
    """Return the stored profile, or ``None`` when the sheet holds no row."""

    sheet = workbook[PROFILE_SHEET]
    for raw in sheet.iter_rows(min_row=2, max_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            return deserialize_profile(raw)
    return None


def append_product(workbook: Workbook, record: ProductRecord) -> None:
    """Append a product record to the ``Products`` worksheet."""

    sheet = workbook[PRODUCTS_SHEET]
    sheet.append(serialize_product(record))


def append_transaction(workbook: Workbook, record: TransactionRecord) -> None:
    """Append a transaction record to the ``Transactions`` worksheet."""

    sheet = workbook[TRANSACTIONS_SHEET]
    sheet.append(serialize_transaction(record))


def write_user_profile(workbook: Workbook, profile: UserProfile) -> None:
    """Write ``profile`` into the single data row of the ``Profile`` sheet."""

    sheet = workbook[PROFILE_SHEET]
    for column, value in enumerate(serialize_profile(profile), start=1):
        sheet.cell(row=2, column=column, value=value)


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    The row whose ``ProductID`` matches ``product_id`` is located, every
    requested field is checked against the header row, and only those cells
    are rewritten.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    sheet_name = PRODUCTS_SHEET
    row_index = locate_row(workbook, sheet_name, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[sheet_name]
    headers = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(headers)}

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown product field: {field}")
        col = header_map[field]
        sheet.cell(row=row_index, column=col, value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRecord) -> list[object]:
    """Arrange a product as ``[ProductID, ProductName, Stock, MinStockAlert]``."""

    return [record.product_id, record.product_name, record.stock, record.min_stock_alert]


def serialize_transaction(record: TransactionRecord) -> list[object]:
    """Arrange a transaction as ``[TransactionID, Timestamp, TotalAmount, PaymentMethod]``."""

    return [
        record.transaction_id,
        record.timestamp_ms,
        record.total_amount,
        record.payment_method,
    ]


def serialize_profile(profile: UserProfile) -> list[object]:
    return [profile.warung_id, profile.role]


def deserialize_product(raw_row: Sequence[object]) -> ProductRecord:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifier and name cells are coerced to ``str`` because Excel happily
    turns numeric-looking ids into numbers. Blank quantities read as ``0``.
    """

    product_id, product_name, stock_raw, min_stock_raw = raw_row[:4]

    return ProductRecord(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        stock=int(stock_raw) if stock_raw is not None else 0,
        min_stock_alert=int(min_stock_raw) if min_stock_raw is not None else 0,
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRecord:
    """Convert a raw worksheet row into a strongly typed transaction record.

    The payment method is kept as the stored text; deciding what to do with
    an unrecognised value is the aggregation engine's concern.
    """

    transaction_id, timestamp_raw, amount_raw, payment_method = raw_row[:4]

    return TransactionRecord(
        transaction_id=str(transaction_id),
        timestamp_ms=int(timestamp_raw) if timestamp_raw is not None else 0,
        total_amount=int(amount_raw) if amount_raw is not None else 0,
        payment_method=str(payment_method) if payment_method is not None else "",
    )


def deserialize_profile(raw_row: Sequence[object]) -> UserProfile:
    warung_id, role = raw_row[:2]
    return UserProfile(
        warung_id=str(warung_id) if warung_id is not None else "",
        role=str(role) if role is not None else "",
    )
