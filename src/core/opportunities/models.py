"""
Opportunity Models

Pydantic models for opportunities and their owned records: stage history,
line items and contact roles, plus the typed create/patch inputs.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field

from ..collaborators.references import (
    AccountSummary,
    ContactSummary,
    TeamMember,
    UserSummary,
)
from ..collaborators.stages import Pipeline, PipelineStage
from ..money import CENTS, ZERO


def utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


ENTITY_TYPE = "opportunities"

CustomValue = Union[str, int, float, bool, None]


class LifecycleState(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"


class Opportunity(BaseModel):
    """A potential sale tracked through a pipeline."""

    id: str = Field(default_factory=new_id)
    name: str
    pipeline_id: str
    stage_id: str
    amount: Optional[Decimal] = None
    currency: str = "USD"
    close_date: Optional[date] = None
    probability: int = Field(default=0, ge=0, le=100)
    forecast_category: str = "pipeline"
    owner_id: Optional[str] = None
    account_id: Optional[str] = None
    primary_contact_id: Optional[str] = None
    priority_id: Optional[str] = None
    type: Optional[str] = None
    source: Optional[str] = None
    lead_id: Optional[str] = None
    next_step: Optional[str] = None
    description: Optional[str] = None
    competitor: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, CustomValue] = Field(default_factory=dict)
    won_at: Optional[datetime] = None
    lost_at: Optional[datetime] = None
    close_reason_id: Optional[str] = None
    close_notes: Optional[str] = None
    stage_entered_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @computed_field
    @property
    def weighted_amount(self) -> Optional[Decimal]:
        if self.amount is None:
            return None
        return (self.amount * self.probability / Decimal(100)).quantize(CENTS)

    @property
    def state(self) -> LifecycleState:
        if self.won_at is not None:
            return LifecycleState.WON
        if self.lost_at is not None:
            return LifecycleState.LOST
        return LifecycleState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state == LifecycleState.OPEN


# Fields diffed into audit entries on update
TRACKED_FIELDS = (
    "name",
    "amount",
    "currency",
    "close_date",
    "probability",
    "forecast_category",
    "owner_id",
    "account_id",
    "primary_contact_id",
    "priority_id",
    "type",
    "source",
    "next_step",
    "description",
    "competitor",
    "tags",
    "custom_fields",
)


class OpportunityCreate(BaseModel):
    """Input for creating an opportunity."""

    name: str = Field(min_length=1, max_length=255)
    pipeline_id: str
    stage_id: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = None
    close_date: Optional[date] = None
    probability: Optional[int] = Field(default=None, ge=0, le=100)
    forecast_category: Optional[str] = None
    owner_id: Optional[str] = None
    account_id: Optional[str] = None
    primary_contact_id: Optional[str] = None
    priority_id: Optional[str] = None
    type: Optional[str] = None
    source: Optional[str] = None
    lead_id: Optional[str] = None
    next_step: Optional[str] = None
    description: Optional[str] = None
    competitor: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, CustomValue] = Field(default_factory=dict)


class OpportunityPatch(BaseModel):
    """
    Partial update. Only attributes the caller set are applied; stage and
    pipeline are moved through the transition operations instead.
    """

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = None
    close_date: Optional[date] = None
    probability: Optional[int] = Field(default=None, ge=0, le=100)
    forecast_category: Optional[str] = None
    owner_id: Optional[str] = None
    account_id: Optional[str] = None
    primary_contact_id: Optional[str] = None
    priority_id: Optional[str] = None
    type: Optional[str] = None
    source: Optional[str] = None
    next_step: Optional[str] = None
    description: Optional[str] = None
    competitor: Optional[str] = None
    tags: Optional[List[str]] = None
    custom_fields: Optional[Dict[str, CustomValue]] = None

    def changes(self) -> Dict[str, Any]:
        """Attributes explicitly set by the caller."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class StageHistoryEntry(BaseModel):
    """One stage transition. Never updated or deleted once written."""

    id: str = Field(default_factory=new_id)
    opportunity_id: str
    from_stage_id: Optional[str] = None
    to_stage_id: str
    from_stage_name: Optional[str] = None
    to_stage_name: Optional[str] = None
    changed_by: Optional[str] = None
    time_in_stage: Optional[timedelta] = None
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Line items
# ---------------------------------------------------------------------------


class LineItemType(str, Enum):
    STANDARD = "standard"
    BUNDLE_PARENT = "bundle_parent"
    BUNDLE_CHILD = "bundle_child"
    BUNDLE_DISCOUNT = "bundle_discount"


class BillingFrequency(str, Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    ANNUALLY = "annually"


class PercentDiscount(BaseModel):
    kind: Literal["percent"] = "percent"
    value: Decimal = Field(ge=0, le=100)


class FixedDiscount(BaseModel):
    kind: Literal["fixed"] = "fixed"
    value: Decimal = Field(ge=0)


Discount = Annotated[Union[PercentDiscount, FixedDiscount], Field(discriminator="kind")]


class LineItem(BaseModel):
    id: str = Field(default_factory=new_id)
    opportunity_id: str
    line_item_type: LineItemType = LineItemType.STANDARD
    parent_line_item_id: Optional[str] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    price_book_entry_id: Optional[str] = None
    description: Optional[str] = None
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = ZERO
    discount_percent: Decimal = ZERO
    discount_amount: Decimal = ZERO
    total_price: Decimal = ZERO
    billing_frequency: BillingFrequency = BillingFrequency.ONE_TIME
    is_optional: bool = False
    sort_order: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def discount(self) -> Optional[Union[PercentDiscount, FixedDiscount]]:
        if self.discount_amount > 0:
            return FixedDiscount(value=self.discount_amount)
        if self.discount_percent > 0:
            return PercentDiscount(value=self.discount_percent)
        return None

    @property
    def carries_derived_price(self) -> bool:
        return self.line_item_type in (LineItemType.BUNDLE_PARENT, LineItemType.BUNDLE_DISCOUNT)


class NewLineItem(BaseModel):
    """Input for adding a product (or bundle) to an opportunity."""

    product_id: Optional[str] = None
    price_book_entry_id: Optional[str] = None
    description: Optional[str] = None
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    discount: Optional[Discount] = None
    billing_frequency: Optional[BillingFrequency] = None


class LineItemPatch(BaseModel):
    """
    Line item update. A tagged `discount` replaces both stored discount
    columns; the raw columns may be set individually instead.
    """

    quantity: Optional[Decimal] = Field(default=None, gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    discount: Optional[Discount] = None
    discount_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    description: Optional[str] = None
    billing_frequency: Optional[BillingFrequency] = None

    @property
    def touches_price(self) -> bool:
        return any(
            value is not None
            for value in (self.quantity, self.unit_price, self.discount, self.discount_percent, self.discount_amount)
        )


# ---------------------------------------------------------------------------
# Contact roles
# ---------------------------------------------------------------------------


class ContactRole(BaseModel):
    id: str = Field(default_factory=new_id)
    opportunity_id: str
    contact_id: str
    role: Optional[str] = None
    is_primary: bool = False
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    contact: Optional[ContactSummary] = None


class ContactRoleInput(BaseModel):
    contact_id: str
    role: Optional[str] = None
    is_primary: bool = False
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class OpportunityDetail(Opportunity):
    """Opportunity enriched with everything a detail view needs."""

    stage: Optional[PipelineStage] = None
    pipeline: Optional[Pipeline] = None
    all_stages: List[PipelineStage] = Field(default_factory=list)
    stage_history: List[StageHistoryEntry] = Field(default_factory=list)
    contact_roles: List[ContactRole] = Field(default_factory=list)
    line_items: List[LineItem] = Field(default_factory=list)
    owner: Optional[UserSummary] = None
    account: Optional[AccountSummary] = None
    primary_contact: Optional[ContactSummary] = None
    team_members: List[TeamMember] = Field(default_factory=list)


class OpportunityFilters(BaseModel):
    search: Optional[str] = None
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    owner_id: Optional[str] = None
    account_id: Optional[str] = None
    priority_id: Optional[str] = None
    type: Optional[str] = None
    source: Optional[str] = None
    forecast_category: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    close_date_from: Optional[date] = None
    close_date_to: Optional[date] = None
    tag: Optional[str] = None
    is_open: Optional[bool] = None
    ownership: Literal["all", "my_deals", "created_by_me"] = "all"


class OpportunityPage(BaseModel):
    items: List[Opportunity]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


class BoardColumn(BaseModel):
    stage: PipelineStage
    opportunities: List[Opportunity] = Field(default_factory=list)
    count: int = 0
    total_amount: Decimal = ZERO
    weighted_amount: Decimal = ZERO


class ForecastBucket(BaseModel):
    forecast_category: str
    month: str
    deal_count: int = 0
    total_amount: Decimal = ZERO
    weighted_amount: Decimal = ZERO


class ForecastSummary(BaseModel):
    total_deals: int = 0
    total_amount: Decimal = ZERO
    weighted_amount: Decimal = ZERO
    avg_probability: float = 0.0
    won_count: int = 0
    lost_count: int = 0


class Forecast(BaseModel):
    buckets: List[ForecastBucket] = Field(default_factory=list)
    summary: ForecastSummary = Field(default_factory=ForecastSummary)
