"""Enumerations shared across the Warung POS modules.

Keeps the identifiers used by the record store, the aggregation engine and
the refresh channel in one place so every layer agrees on the spelling of a
payment method or a signal name.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version expected by this release.
EXPECTED_SCHEMA_VERSION = "1.0.0"

MILLISECONDS_PER_DAY = 86_400_000
SERIES_DAYS = 7


class PaymentMethod(str, Enum):
    """Closed set of payment methods a transaction can carry."""

    CASH = "cash"
    QRIS = "qris"
    DEBT = "debt"


class UserRole(str, Enum):
    """Roles a shop profile may hold."""

    OWNER = "owner"
    STAFF = "staff"


class Signal(str, Enum):
    """Named signals carried by the refresh channel."""

    TRANSACTIONS_CHANGED = "transactions-changed"
    PROFILE_CHANGED = "profile-changed"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    TRANSACTIONS = "Transactions"
    PROFILE = "Profile"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MILLISECONDS_PER_DAY",
    "SERIES_DAYS",
    "PaymentMethod",
    "UserRole",
    "Signal",
    "SheetName",
]
