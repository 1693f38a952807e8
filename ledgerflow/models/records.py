"""Canonical financial records used for matching."""
import datetime as dt
from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import Field

from ledgerflow.models.base import FrozenModel


class Record(FrozenModel):
    """A normalized ledger or externally-extracted entry."""
    amount: Decimal = Decimal("0")
    date: Optional[dt.date] = None
    description: str = ""
    category: str = "other"
    source_id: Optional[str] = None
    source: str = "unknown"
    raw: Dict[str, Any] = Field(default_factory=dict, repr=False)

    @property
    def comparable_text(self) -> str:
        return f"{self.description} {self.category}"

    def to_payload(self) -> Dict[str, Any]:
        """Shape accepted by the ledger backend when creating an entry."""
        return {
            "amount": float(self.amount),
            "date": self.date.isoformat() if self.date else None,
            "description": self.description,
            "category": self.category,
        }
