from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AmountOperator, TransactionType


class FilterSpec(BaseModel):
    """Canonical transaction filter.

    Only ``filters.normalize_filters`` should build these from user input; it
    guarantees that no field holds a blank value and that set-valued fields are
    sorted and deduplicated, so equal filters compare (and hash) equal.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    amount_operator: Optional[AmountOperator] = None
    account_ids: tuple[int, ...] = ()
    category_ids: tuple[int, ...] = ()
    merchant_ids: tuple[int, ...] = ()
    tag_ids: tuple[int, ...] = ()
    types: tuple[TransactionType, ...] = ()

    def to_params(self) -> dict[str, object]:
        params: dict[str, object] = {}
        if self.start_date:
            params["start_date"] = self.start_date.isoformat()
        if self.end_date:
            params["end_date"] = self.end_date.isoformat()
        if self.search:
            params["search"] = self.search
        if self.amount_cents is not None:
            params["amount"] = (
                f"{self.amount_cents // 100}.{self.amount_cents % 100:02d}"
            )
            if self.amount_operator:
                params["amount_operator"] = self.amount_operator.value
        for field in ("account_ids", "category_ids", "merchant_ids", "tag_ids"):
            values = getattr(self, field)
            if values:
                params[field] = [str(v) for v in values]
        if self.types:
            params["types"] = [t.value for t in self.types]
        return params


class SessionFilterState(BaseModel):
    model_config = ConfigDict(frozen=True)

    filters: FilterSpec
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=50, ge=1)

    def to_params(self) -> dict[str, object]:
        params = self.filters.to_params()
        params["page"] = str(self.page)
        params["per_page"] = str(self.per_page)
        return params


class Totals(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_count: int
    income_cents: int
    expense_cents: int
    computed_at: datetime

    @property
    def balance_cents(self) -> int:
        return self.income_cents - self.expense_cents


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    order: int = 0


class TransactionIn(BaseModel):
    date: date
    occurred_at: datetime
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    category_id: int
    account_id: Optional[int] = None
    merchant: Optional[str] = Field(default=None, max_length=120)
    note: Optional[str] = Field(default=None, max_length=200)
    tags: list[str] = Field(default_factory=list)
