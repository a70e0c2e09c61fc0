"""Workspace entity records: customers, parts, labor items, jobs, quotes and invoices."""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from enum import StrEnum
from typing import Any, ClassVar

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class EntityType(StrEnum):
    """Entity collections tracked by the sync engine."""

    CUSTOMER = "customer"
    PART = "part"
    LABOR_ITEM = "labor_item"
    JOB = "job"
    QUOTE = "quote"
    INVOICE = "invoice"

    @classmethod
    def parse(cls, value: str | EntityType) -> EntityType:
        """Return the entity type for a wire name or one of its legacy aliases."""

        if isinstance(value, cls):
            return value
        text = str(value).strip()
        match = _ENTITY_ALIASES.get(text) or _ENTITY_ALIASES.get(_snake_case(text))
        if match is None:
            raise ValueError(f"unknown entity type: {value!r}")
        return match


_ENTITY_ALIASES: dict[str, EntityType] = {
    "customer": EntityType.CUSTOMER,
    "customers": EntityType.CUSTOMER,
    "part": EntityType.PART,
    "parts": EntityType.PART,
    "labor_item": EntityType.LABOR_ITEM,
    "labor_items": EntityType.LABOR_ITEM,
    "labor": EntityType.LABOR_ITEM,
    "job": EntityType.JOB,
    "jobs": EntityType.JOB,
    "quote": EntityType.QUOTE,
    "quotes": EntityType.QUOTE,
    "invoice": EntityType.INVOICE,
    "invoices": EntityType.INVOICE,
}


class LineItemType(StrEnum):
    PART = "part"
    LABOR = "labor"


DOCUMENT_TYPES: tuple[EntityType, ...] = (EntityType.JOB, EntityType.QUOTE, EntityType.INVOICE)
CATALOG_TYPES: tuple[EntityType, ...] = (EntityType.PART, EntityType.LABOR_ITEM)

_FLOAT_FIELDS = {
    "unit_price",
    "hourly_rate",
    "quantity",
    "total",
    "subtotal",
    "tax",
    "tax_rate",
    "paid_amount",
}
_INT_FIELDS = {"stock"}


def _snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def normalise_keys(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {_snake_case(str(key)): value for key, value in payload.items()}


def _coerce_number(name: str, value: Any) -> float | int:
    if isinstance(value, bool):
        raise TypeError(f"{name} must be numeric, got {value!r}")
    try:
        if name in _INT_FIELDS:
            return int(value)
        number = float(value)
        if not math.isfinite(number):
            raise ValueError(f"{name} must be finite")
        return number
    except (TypeError, ValueError, OverflowError) as err:
        raise ValueError(f"{name} must be numeric, got {value!r}") from err


@dataclass
class LineItem:
    """A single billable line referencing a part or a labor item."""

    id: str
    type: str = LineItemType.PART.value
    item_id: str = ""
    quantity: float = 1.0
    unit_price: float = 0.0
    total: float = 0.0
    description: str | None = None

    @property
    def target_type(self) -> EntityType:
        if self.type == LineItemType.LABOR:
            return EntityType.LABOR_ITEM
        return EntityType.PART

    def recalculate(self) -> None:
        self.total = round(self.quantity * self.unit_price, 2)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> LineItem:
        if not isinstance(payload, Mapping):
            raise TypeError(f"line item must be a mapping, got {type(payload).__name__}")
        data = normalise_keys(payload)
        item_id = str(data.get("item_id") or "").strip()
        if not item_id:
            raise ValueError("line item missing item_id")
        try:
            item_type = LineItemType(str(data.get("type") or LineItemType.PART.value)).value
        except ValueError as err:
            raise ValueError(f"invalid line item type: {data.get('type')!r}") from err
        kwargs: dict[str, Any] = {
            "id": str(data.get("id") or item_id),
            "type": item_type,
            "item_id": item_id,
            "description": data.get("description"),
        }
        for name in ("quantity", "unit_price", "total"):
            if data.get(name) is not None:
                kwargs[name] = _coerce_number(name, data[name])
        return cls(**kwargs)


@dataclass
class Record:
    """Base class for workspace-scoped entities."""

    entity_type: ClassVar[EntityType]
    statuses: ClassVar[tuple[str, ...]] = ()

    id: str
    created_at: str = ""
    updated_at: str = ""

    @property
    def display_name(self) -> str:
        return self.id

    def validate(self) -> None:
        """Raise ``ValueError`` when local input violates the record's constraints."""

        status = getattr(self, "status", None)
        if self.statuses and status not in self.statuses:
            raise ValueError(f"invalid {self.entity_type} status {status!r}; expected one of {', '.join(self.statuses)}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]):
        """Build a record from a stored or pulled payload.

        Keys may be snake_case or camelCase; unknown keys are ignored so newer
        clients can add fields without breaking older ones.
        """

        if not isinstance(payload, Mapping):
            raise TypeError(f"{cls.__name__} payload must be a mapping, got {type(payload).__name__}")
        data = normalise_keys(payload)
        record_id = str(data.get("id") or "").strip()
        if not record_id:
            raise ValueError(f"{cls.__name__} payload missing id")
        kwargs: dict[str, Any] = {}
        for item in fields(cls):
            if item.name not in data or item.name == "id":
                continue
            value = data[item.name]
            if item.name == "items":
                if value is None:
                    continue
                if not isinstance(value, list | tuple):
                    raise TypeError("items must be a list")
                kwargs["items"] = [LineItem.from_dict(line) for line in value]
            elif item.name in _FLOAT_FIELDS or item.name in _INT_FIELDS:
                if value is None:
                    continue
                kwargs[item.name] = _coerce_number(item.name, value)
            else:
                kwargs[item.name] = value
        return cls(id=record_id, **kwargs)


@dataclass
class Customer(Record):
    entity_type: ClassVar[EntityType] = EntityType.CUSTOMER

    name: str = ""
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    company: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class Part(Record):
    entity_type: ClassVar[EntityType] = EntityType.PART

    name: str = ""
    description: str | None = None
    unit_price: float = 0.0
    stock: int = 0
    sku: str | None = None
    category: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.sku or self.id


@dataclass
class LaborItem(Record):
    entity_type: ClassVar[EntityType] = EntityType.LABOR_ITEM

    name: str = ""
    description: str | None = None
    hourly_rate: float = 0.0
    category: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.description or self.id


@dataclass
class LineItemDocument(Record):
    """Shared shape of jobs, quotes and invoices."""

    customer_id: str = ""
    title: str = ""
    description: str | None = None
    status: str = ""
    items: list[LineItem] = field(default_factory=list)
    subtotal: float = 0.0
    tax: float = 0.0
    tax_rate: float = 0.0
    total: float = 0.0
    notes: str | None = None

    @property
    def display_name(self) -> str:
        return self.title or self.id

    def recalculate_totals(self) -> None:
        for line in self.items:
            line.recalculate()
        self.subtotal = round(sum(line.total for line in self.items), 2)
        self.tax = round(self.subtotal * self.tax_rate / 100, 2)
        self.total = round(self.subtotal + self.tax, 2)

    def references(self, entity_type: EntityType, entity_id: str) -> bool:
        return any(line.target_type == entity_type and line.item_id == entity_id for line in self.items)


@dataclass
class Job(LineItemDocument):
    entity_type: ClassVar[EntityType] = EntityType.JOB
    statuses: ClassVar[tuple[str, ...]] = ("active", "on-hold", "completed", "cancelled")

    status: str = "active"
    due_date: str | None = None
    completed_at: str | None = None


@dataclass
class Quote(LineItemDocument):
    entity_type: ClassVar[EntityType] = EntityType.QUOTE
    statuses: ClassVar[tuple[str, ...]] = ("draft", "sent", "approved", "rejected", "expired")

    status: str = "draft"
    job_id: str | None = None
    quote_number: str = ""
    valid_until: str | None = None


@dataclass
class Invoice(LineItemDocument):
    entity_type: ClassVar[EntityType] = EntityType.INVOICE
    statuses: ClassVar[tuple[str, ...]] = ("draft", "sent", "paid", "overdue", "cancelled")

    status: str = "draft"
    job_id: str | None = None
    quote_id: str | None = None
    invoice_number: str = ""
    due_date: str | None = None
    payment_terms: str | None = None
    paid_at: str | None = None
    paid_amount: float | None = None


RECORD_TYPES: dict[EntityType, type[Record]] = {
    EntityType.CUSTOMER: Customer,
    EntityType.PART: Part,
    EntityType.LABOR_ITEM: LaborItem,
    EntityType.JOB: Job,
    EntityType.QUOTE: Quote,
    EntityType.INVOICE: Invoice,
}


def record_from_dict(entity_type: EntityType | str, payload: Mapping[str, Any]) -> Record:
    return RECORD_TYPES[EntityType.parse(entity_type)].from_dict(payload)


__all__ = [
    "CATALOG_TYPES",
    "DOCUMENT_TYPES",
    "RECORD_TYPES",
    "Customer",
    "EntityType",
    "Invoice",
    "Job",
    "LaborItem",
    "LineItem",
    "LineItemDocument",
    "LineItemType",
    "Part",
    "Quote",
    "Record",
    "normalise_keys",
    "record_from_dict",
]
