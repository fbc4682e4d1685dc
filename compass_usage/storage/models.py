"""
Data models for usage records.

Defines the decoded usage row and the query options for a usage fetch.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict


@dataclass(frozen=True)
class UsageRecord:
    """One row of card activity as reported by the portal.

    Records are immutable once decoded. ``balance_details`` is kept as the
    raw string from the export; use ``balance_amount`` when a numeric
    balance is needed.
    """
    date_time: datetime
    transaction: str
    product: str
    line_item: str
    amount: float
    balance_details: str
    order_date: str
    payment: str
    order_number: str
    auth_code: str
    total: str

    @property
    def balance_amount(self) -> float:
        """Balance details parsed as currency.

        Raises:
            FormatError: If the field is not a currency amount
        """
        from compass_usage.core.decoder import parse_amount  # imported lazily to avoid circular import
        return parse_amount(self.balance_details)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the portal's field names."""
        return {
            "DateTime": self.date_time.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "Transaction": self.transaction,
            "Product": self.product,
            "LineItem": self.line_item,
            "Amount": self.amount,
            "BalanceDetails": self.balance_details,
            "OrderDate": self.order_date,
            "Payment": self.payment,
            "OrderNumber": self.order_number,
            "AuthCode": self.auth_code,
            "Total": self.total,
        }


@dataclass(frozen=True)
class UsageOptions:
    """Inclusive date range for a usage query."""
    start_date: datetime
    end_date: datetime

    def __post_init__(self):
        """Validate the range is not inverted."""
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
