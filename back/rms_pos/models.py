from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, DateTime, Numeric, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ============ STATUS ENUMS ============

class OrderType(str, Enum):
    DINE_IN = "DINE_IN"
    TAKEAWAY = "TAKEAWAY"
    DELIVERY = "DELIVERY"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    SERVED = "SERVED"
    CANCELLED = "CANCELLED"
    MERGED = "MERGED"  # Folded into another order by a table merge

    @property
    def is_terminal(self) -> bool:
        return not ORDER_STATUS_TRANSITIONS[self]

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in ORDER_STATUS_TRANSITIONS[self]


ORDER_STATUS_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.SERVED, OrderStatus.CANCELLED}),
    OrderStatus.SERVED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.MERGED: frozenset(),
}


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    DIGITAL_WALLET = "DIGITAL_WALLET"
    UPI = "UPI"
    CREDIT = "CREDIT"


class BillStatus(str, Enum):
    PENDING = "PENDING"
    SPLIT = "SPLIT"  # Paid through child bills
    PAID = "PAID"
    CANCELLED = "CANCELLED"  # Superseded by a newer bill or by a merge


class SplitType(str, Enum):
    EQUAL = "EQUAL"
    BY_AMOUNT = "BY_AMOUNT"
    BY_ITEMS = "BY_ITEMS"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class PrepStatus(str, Enum):
    """Preparation lifecycle shared by KOTs and the items on them"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    READY = "READY"
    SERVED = "SERVED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (PrepStatus.SERVED, PrepStatus.CANCELLED)

    def can_transition_to(self, target: "PrepStatus") -> bool:
        """Staff may move a ticket forward (skipping steps) or cancel a live one."""
        if self.is_terminal:
            return False
        if target == PrepStatus.CANCELLED:
            return True
        return PREP_SEQUENCE.index(target) > PREP_SEQUENCE.index(self)


PREP_SEQUENCE: tuple[PrepStatus, ...] = (
    PrepStatus.PENDING,
    PrepStatus.IN_PROGRESS,
    PrepStatus.READY,
    PrepStatus.SERVED,
)

# Items follow the chain only; an item is never cancelled on its own
ITEM_PREP_STATUSES = frozenset(PREP_SEQUENCE)


class KOTPriority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @property
    def rank(self) -> int:
        return list(KOTPriority).index(self)


class TableStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"
    RESERVED = "RESERVED"
    CLEANING = "CLEANING"
    OUT_OF_ORDER = "OUT_OF_ORDER"

    def can_transition_to(self, target: "TableStatus") -> bool:
        return target in TABLE_STATUS_TRANSITIONS[self]


TABLE_STATUS_TRANSITIONS: dict[TableStatus, frozenset[TableStatus]] = {
    TableStatus.AVAILABLE: frozenset(
        {TableStatus.OCCUPIED, TableStatus.RESERVED, TableStatus.OUT_OF_ORDER}
    ),
    TableStatus.OCCUPIED: frozenset({TableStatus.CLEANING}),
    TableStatus.CLEANING: frozenset({TableStatus.AVAILABLE, TableStatus.OUT_OF_ORDER}),
    TableStatus.RESERVED: frozenset(
        {TableStatus.AVAILABLE, TableStatus.OCCUPIED, TableStatus.OUT_OF_ORDER}
    ),
    TableStatus.OUT_OF_ORDER: frozenset({TableStatus.AVAILABLE}),
}


class IdentifierKind(str, Enum):
    ORDER = "ORD"
    BILL = "BILL"
    INVOICE = "INV"
    KOT = "KOT"


# ============ TABLES ============

class TenantMixin(SQLModel):
    # Tenant isolation happens beneath the session; every row still records its tenant
    tenant_id: str = Field(index=True)


class Table(TenantMixin, table=True):
    __tablename__ = "dining_table"
    __table_args__ = (UniqueConstraint("tenant_id", "outlet_id", "table_number"),)

    id: int | None = Field(default=None, primary_key=True)
    outlet_id: str = Field(index=True)
    table_number: str  # e.g. "T5"
    capacity: int
    section: str | None = None  # e.g. "Terrace"
    status: TableStatus = Field(default=TableStatus.AVAILABLE, index=True)
    is_active: bool = Field(default=True, index=True)
    status_updated_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Order(TenantMixin, table=True):
    __table_args__ = (UniqueConstraint("tenant_id", "outlet_id", "order_number"),)

    id: int | None = Field(default=None, primary_key=True)
    outlet_id: str = Field(index=True)
    order_number: str = Field(index=True)
    table_id: int | None = Field(default=None, foreign_key="dining_table.id", index=True)
    customer_id: str | None = None
    order_type: OrderType = Field(default=OrderType.DINE_IN)

    subtotal_cents: int = 0
    tax_cents: int = 0
    total_cents: int = 0
    # Rate applied at creation; None for merged orders built from mixed rates
    tax_rate: Decimal | None = Field(default=None, sa_type=Numeric(6, 4))

    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)
    payment_method: str | None = None  # Single method, or "SPLIT" for mixed tenders
    invoice_number: str | None = Field(default=None, index=True)
    customer_info: dict | None = Field(default=None, sa_type=JSON)  # Captured at payment
    merged_into_order_id: int | None = Field(default=None, foreign_key="order.id")
    notes: str | None = None

    paid_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    items: list["OrderItem"] = Relationship(back_populates="order")


class OrderItem(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    menu_item_id: str
    name: str  # Snapshot of the menu item name at order time
    quantity: int
    unit_price: Decimal = Field(sa_type=Numeric(14, 6))  # Snapshot, may be sub-cent
    total_price_cents: int
    special_instructions: str | None = None

    status: PrepStatus = Field(default=PrepStatus.PENDING)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    order: Order = Relationship(back_populates="items")


class Bill(TenantMixin, table=True):
    __table_args__ = (UniqueConstraint("tenant_id", "outlet_id", "bill_number"),)

    id: int | None = Field(default=None, primary_key=True)
    outlet_id: str = Field(index=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    bill_number: str = Field(index=True)
    parent_bill_id: int | None = Field(default=None, foreign_key="bill.id", index=True)
    split_number: int | None = None
    split_type: SplitType | None = None  # Set on the children of a split

    # Order items this bill covers
    item_ids: list[int] = Field(default_factory=list, sa_type=JSON)

    subtotal_cents: int = 0
    # [{"name", "type", "value", "amount_cents"}]
    discounts: list[dict] = Field(default_factory=list, sa_type=JSON)
    discount_cents: int = 0
    service_charge_percent: Decimal = Field(default=Decimal("0"), sa_type=Numeric(6, 3))
    service_charge_cents: int = 0
    # [{"name", "rate", "amount_cents"}], rate in percent
    taxes: list[dict] = Field(default_factory=list, sa_type=JSON)
    tax_cents: int = 0
    total_cents: int = 0

    status: BillStatus = Field(default=BillStatus.PENDING, index=True)
    invoice_number: str | None = Field(default=None, index=True)
    customer_info: dict | None = Field(default=None, sa_type=JSON)
    notes: str | None = None

    paid_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Payment(TenantMixin, table=True):
    """One processed tender. Settlement happens outside the engine."""
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    bill_id: int | None = Field(default=None, foreign_key="bill.id", index=True)
    invoice_number: str = Field(index=True)
    method: PaymentMethod
    amount_cents: int
    reference: str | None = None
    card_last4: str | None = None
    approval_code: str | None = None
    processed_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class KOT(TenantMixin, table=True):
    __table_args__ = (UniqueConstraint("tenant_id", "outlet_id", "kot_number"),)

    id: int | None = Field(default=None, primary_key=True)
    outlet_id: str = Field(index=True)
    kot_number: str = Field(index=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    order_number: str
    table_id: int | None = Field(default=None, foreign_key="dining_table.id")
    order_type: OrderType = Field(default=OrderType.DINE_IN)
    priority: KOTPriority = Field(default=KOTPriority.NORMAL, index=True)
    status: PrepStatus = Field(default=PrepStatus.PENDING, index=True)
    notes: str | None = None

    estimated_completion_time: datetime = Field(sa_type=DateTime(timezone=True), index=True)
    started_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    actual_completion_time: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    assigned_to: str | None = None  # Kitchen staff id
    assigned_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), index=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    items: list["KOTItem"] = Relationship(back_populates="kot")


class KOTItem(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    kot_id: int = Field(foreign_key="kot.id", index=True)
    order_item_id: int | None = Field(default=None, foreign_key="orderitem.id")
    menu_item_id: str
    name: str
    quantity: int
    special_instructions: str | None = None
    status: PrepStatus = Field(default=PrepStatus.PENDING)
    started_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    completed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))

    kot: KOT = Relationship(back_populates="items")


class IdentifierSequence(TenantMixin, table=True):
    """Per (tenant, outlet, kind, business date) counter behind issued numbers"""
    __tablename__ = "identifier_sequence"
    __table_args__ = (UniqueConstraint("tenant_id", "outlet_id", "kind", "business_date"),)

    id: int | None = Field(default=None, primary_key=True)
    outlet_id: str
    kind: str
    business_date: str  # YYYYMMDD
    last_value: int = 0


# ============ REQUEST MODELS ============

class OrderItemCreate(SQLModel):
    menu_item_id: str
    menu_item_name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)
    special_instructions: str | None = None


class OrderCreate(SQLModel):
    outlet_id: str = Field(min_length=1)
    order_type: OrderType = OrderType.DINE_IN
    items: list[OrderItemCreate]
    table_id: int | None = None
    customer_id: str | None = None
    notes: str | None = None
    tax_rate: Decimal | None = Field(default=None, ge=0)


class OrderStatusUpdate(SQLModel):
    status: str


class PaymentInput(SQLModel):
    method: str
    amount: Decimal
    reference: str | None = None
    card_last4: str | None = None
    approval_code: str | None = None


class PaymentRequest(SQLModel):
    payments: list[PaymentInput]
    customer_info: dict | None = None


class ItemGroup(SQLModel):
    item_ids: list[int]


class AmountSplit(SQLModel):
    amount: Decimal
    description: str | None = None


class OrderSplitRequest(SQLModel):
    split_type: SplitType
    number_of_people: int | None = None
    amount_splits: list[AmountSplit] | None = None
    item_splits: list[ItemGroup] | None = None


class TablesMergeRequest(SQLModel):
    table_ids: list[int]


class DiscountInput(SQLModel):
    name: str | None = None
    type: DiscountType
    value: Decimal


class TaxInput(SQLModel):
    name: str
    rate: Decimal  # Percent, e.g. 18 for 18%


class BillGenerate(SQLModel):
    order_id: int
    discounts: list[DiscountInput] = []
    taxes: list[TaxInput] | None = None
    service_charge: Decimal = Field(default=Decimal("0"), ge=0)  # Percent of subtotal
    notes: str | None = None


class BillEqualSplit(SQLModel):
    number_of_people: int


class BillAmountSplit(SQLModel):
    amounts: list[Decimal]


class BillItemSplit(SQLModel):
    item_splits: list[ItemGroup]


class TableCreate(SQLModel):
    outlet_id: str = Field(min_length=1)
    table_number: str = Field(min_length=1)
    capacity: int
    section: str | None = None
    is_active: bool = True


class TableUpdate(SQLModel):
    table_number: str | None = None
    capacity: int | None = None
    section: str | None = None
    is_active: bool | None = None


class TableStatusUpdate(SQLModel):
    status: str


class TableAssign(SQLModel):
    party_size: int | None = None
    customer_id: str | None = None
    customer_name: str | None = None
    reservation_time: datetime | None = None
    notes: str | None = None


class KOTRequest(SQLModel):
    priority: KOTPriority = KOTPriority.NORMAL
    notes: str | None = None


class KOTGenerate(KOTRequest):
    order_id: int


class KOTStatusUpdate(SQLModel):
    status: str


class KOTAssign(SQLModel):
    staff_id: str | None = None


class KOTPreparationTimeUpdate(SQLModel):
    estimated_completion_time: datetime
