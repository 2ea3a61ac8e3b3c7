"""Expense-like input schema."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class ExpenseInput(BaseModel):
    """The fields the engine reads from an expense; any object exposing them works too."""

    id: int | None = None
    merchant_name: str | None = None
    description: str | None = None
    amount: Decimal | None = None
    transaction_timestamp: datetime | None = None
    category_id: int | None = None

    model_config = {"from_attributes": True}
