from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    field_validator,
)
from pydantic.alias_generators import to_camel

from models import TransactionGroupType, TransactionType, TransferDirection


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _url_text(value: HttpUrl) -> str:
    text = str(value)
    if len(text) > 2048:
        raise ValueError("URL must be at most 2048 characters")
    return text


AttachmentUrl = Annotated[HttpUrl, AfterValidator(_url_text)]


def _split_tags(value: object) -> object:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class AccountIn(CamelModel):
    name: str = Field(..., min_length=2, max_length=120)
    type: str = Field(..., min_length=2, max_length=60)
    initial_balance: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)


class AccountUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=120)
    type: Optional[str] = Field(default=None, min_length=2, max_length=60)
    initial_balance: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=2, max_length=100)
    parent_id: Optional[int] = Field(default=None, ge=1)


class CategoryUpdate(CamelModel):
    """Partial update; an explicit ``parentId: null`` detaches the category."""

    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    parent_id: Optional[int] = Field(default=None, ge=1)


class TransactionIn(CamelModel):
    type: TransactionType
    account_id: int = Field(..., ge=1)
    target_account_id: Optional[int] = Field(default=None, ge=1)
    category_id: Optional[int] = Field(default=None, ge=1)
    amount: Decimal = Field(..., decimal_places=2)
    occurred_at: datetime
    notes: Optional[str] = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)
    attachment_url: Optional[AttachmentUrl] = None
    installments_total: Optional[int] = Field(default=None, ge=1)
    installment_number: Optional[int] = Field(default=None, ge=1)
    recurrence_rrule: Optional[str] = Field(
        default=None, alias="recurrenceRRule", min_length=4, max_length=500
    )

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value: object) -> object:
        return _split_tags(value)


class TransactionUpdate(CamelModel):
    type: Optional[TransactionType] = None
    account_id: Optional[int] = Field(default=None, ge=1)
    target_account_id: Optional[int] = Field(default=None, ge=1)
    category_id: Optional[int] = Field(default=None, ge=1)
    amount: Optional[Decimal] = Field(default=None, decimal_places=2)
    occurred_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[list[str]] = None
    attachment_url: Optional[AttachmentUrl] = None
    installments_total: Optional[int] = Field(default=None, ge=1)
    installment_number: Optional[int] = Field(default=None, ge=1)
    recurrence_rrule: Optional[str] = Field(
        default=None, alias="recurrenceRRule", min_length=4, max_length=500
    )

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, value: object) -> object:
        return _split_tags(value)


class BudgetIn(CamelModel):
    category_id: int = Field(..., ge=1)
    year: int = Field(..., ge=2000, le=3000)
    month: int = Field(..., ge=1, le=12)
    planned_amount: Decimal = Field(..., ge=0, decimal_places=2)


class BudgetUpdate(CamelModel):
    category_id: Optional[int] = Field(default=None, ge=1)
    year: Optional[int] = Field(default=None, ge=2000, le=3000)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    planned_amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)


class AccountTotalsView(CamelModel):
    income: Decimal
    expense: Decimal
    transfer_in: Decimal
    transfer_out: Decimal
    transfer_net: Decimal


class AccountView(CamelModel):
    id: int
    name: str
    type: str
    initial_balance: Decimal
    created_at: datetime
    balance: Decimal
    totals: AccountTotalsView


class CategoryView(CamelModel):
    id: int
    name: str
    parent_id: Optional[int] = None


class CategoryNode(CamelModel):
    id: int
    name: str
    parent_id: Optional[int] = None
    children: list["CategoryNode"] = Field(default_factory=list)


class TagView(CamelModel):
    id: int
    name: str


class TransactionView(CamelModel):
    id: int
    group_id: Optional[str] = None
    group_type: Optional[TransactionGroupType] = None
    type: TransactionType
    amount: Decimal
    occurred_at: datetime
    account_id: int
    account_name: str
    transfer_account_id: Optional[int] = None
    transfer_account_name: Optional[str] = None
    transfer_direction: Optional[TransferDirection] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    attachment_url: Optional[str] = None
    installments_total: Optional[int] = None
    installment_number: Optional[int] = None
    recurrence_rrule: Optional[str] = Field(default=None, alias="recurrenceRRule")


class BudgetView(CamelModel):
    id: int
    category_id: int
    category_name: str
    month: int
    year: int
    planned_amount: Decimal
    actual_amount: Decimal


class PageMeta(CamelModel):
    page: int
    page_size: int
    total: int
    page_count: int
