"""Low-stock alert shown on the dashboard.

The alert is sticky: a snapshot with at least one low-stock product raises
it, and only :meth:`LowStockAlert.dismiss` lowers it again. A later snapshot
with zero low-stock products leaves a raised alert untouched.
"""

from __future__ import annotations

from dataclasses import dataclass

from . import log
from .aggregation import DashboardSnapshot


LOW_STOCK_MESSAGE = "Perhatian: Ada {count} produk dengan stok menipis!"


@dataclass
class LowStockAlert:
    """Sticky visibility flag plus the count seen by the latest evaluation."""

    visible: bool = False
    low_stock_count: int = 0

    def evaluate(self, snapshot: DashboardSnapshot) -> bool:
        """Raise the alert when ``snapshot`` reports low stock.

        Returns:
            bool: The visibility after evaluation.
        """
        self.low_stock_count = snapshot.low_stock_count
        if snapshot.low_stock_count > 0 and not self.visible:
            self.visible = True
            log.warning("Low stock alert raised for %d product(s)", snapshot.low_stock_count)
        return self.visible

    def dismiss(self) -> None:
        if self.visible:
            log.info("Low stock alert dismissed")
        self.visible = False

    def message(self) -> str:
        return LOW_STOCK_MESSAGE.format(count=self.low_stock_count)
