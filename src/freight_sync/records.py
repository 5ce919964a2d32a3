"""
Canonical record types and the decoders for both backends.

The primary (hosted) backend returns snake_case rows; the fallback (legacy
offline) backend stores camelCase documents and omits several optional fields.
``from_primary`` / ``from_fallback`` and their ``to_*`` counterparts are the
only code that knows either naming convention.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Any, ClassVar, TypeVar

from .errors import ShapeMismatchError

logger = logging.getLogger(__name__)

R = TypeVar("R", bound="Record")

_CAMEL_BOUNDARY = re.compile(r"_([a-z0-9])")


def to_camel(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(lambda m: m.group(1).upper(), name)


@dataclass
class Record:
    """Base class: decoding and encoding driven by the dataclass fields."""

    # canonical field -> extra legacy keys tried after the camelCase name
    FALLBACK_ALIASES: ClassVar[dict[str, tuple[str, ...]]] = {}

    id: str

    @classmethod
    def _build(cls: type[R], row: Any, lookup: Any, source: str) -> R:
        if not isinstance(row, dict):
            raise ShapeMismatchError(f"{source} {cls.__name__} row is not an object")
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            value = lookup(row, f.name)
            if value is None:
                # Absent or null: fall through to the dataclass default.
                continue
            kwargs[f.name] = value
        if not kwargs.get("id"):
            raise ShapeMismatchError(f"{source} {cls.__name__} row has no id")
        kwargs["id"] = str(kwargs["id"])
        return cls(**kwargs)

    @classmethod
    def from_primary(cls: type[R], row: dict[str, Any]) -> R:
        return cls._build(row, lambda r, name: r.get(name), "primary")

    @classmethod
    def from_fallback(cls: type[R], row: dict[str, Any]) -> R:
        def lookup(r: dict[str, Any], name: str) -> Any:
            for key in (to_camel(name), *cls.FALLBACK_ALIASES.get(name, ())):
                if r.get(key) is not None:
                    return r[key]
            return None

        return cls._build(row, lookup, "fallback")

    @classmethod
    def from_dict(cls: type[R], data: dict[str, Any]) -> R:
        """Rebuild from a canonical snapshot (mirror contents)."""
        return cls.from_primary(data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_primary(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_fallback(self) -> dict[str, Any]:
        return {to_camel(k): v for k, v in asdict(self).items()}


@dataclass
class User(Record):
    name: str = ""
    email: str = ""
    company: str = ""
    role: str = "customer"
    amazon_seller_id: str | None = None
    ein_tax_id: str | None = None
    staff_position: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class QuoteRequest(Record):
    FALLBACK_ALIASES: ClassVar[dict[str, tuple[str, ...]]] = {
        "destination_warehouses": ("destinations",),
    }

    customer_id: str | None = None
    service_type: str = "Air Freight"
    pickup_location: str = ""
    destination_warehouses: list[dict[str, Any]] = field(default_factory=list)
    cargo_ready_date: str | None = None
    total_weight: float = 0
    total_volume: float = 0
    total_cartons: int = 0
    special_requirements: str | None = None
    status: str = "Awaiting Quote"
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Quote(Record):
    request_id: str | None = None
    customer_id: str | None = None
    staff_id: str | None = None
    freight_cost: float = 0
    insurance_cost: float = 0
    additional_charges: list[dict[str, Any]] = field(default_factory=list)
    total_amount: float = 0
    valid_until: str | None = None
    status: str = "Pending"
    per_warehouse_costs: list[dict[str, Any]] | None = None
    commission_rate_per_kg: float | None = None
    notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Shipment(Record):
    quote_id: str | None = None
    customer_id: str | None = None
    status: str = ""
    origin: str = ""
    destination: str = ""
    cargo_details: Any = None
    estimated_weight: float = 0
    actual_weight: float | None = None
    estimated_delivery: str | None = None
    actual_delivery: str | None = None
    tracking_number: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    documents: list[dict[str, Any]] = field(default_factory=list)
    invoice: dict[str, Any] | None = None
    destinations: list[dict[str, Any]] = field(default_factory=list)
    photos: list[Any] = field(default_factory=list)


@dataclass
class Invoice(Record):
    shipment_id: str | None = None
    customer_id: str | None = None
    invoice_number: str = ""
    amount: float = 0
    status: str = "Pending"
    due_date: str | None = None
    paid_date: str | None = None
    payment_method: str | None = None
    payment_reference: str | None = None
    notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Message(Record):
    FALLBACK_ALIASES: ClassVar[dict[str, tuple[str, ...]]] = {
        "warehouse": ("warehouseName",),
    }

    shipment_id: str | None = None
    customer_id: str | None = None
    sender_id: str | None = None
    sender_name: str = ""
    sender_role: str = ""
    content: str = ""
    created_at: str | None = None
    warehouse: str | None = None
    read_by_customer: bool = False
    read_by_staff: bool = False


DATASETS: dict[str, type[Record]] = {
    "users": User,
    "quoteRequests": QuoteRequest,
    "quotes": Quote,
    "shipments": Shipment,
    "invoices": Invoice,
}


def record_type(dataset: str) -> type[Record]:
    try:
        return DATASETS[dataset]
    except KeyError:
        raise ValueError(
            f"unknown dataset {dataset!r}; expected one of: {', '.join(DATASETS)}"
        ) from None


def encode_fields(dataset: str, values: dict[str, Any], target: str) -> dict[str, Any]:
    """Encode canonical field values for the ``primary`` or ``fallback`` backend."""
    cls = record_type(dataset)
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"unknown {dataset} fields: {', '.join(unknown)}")
    if target == "primary":
        return dict(values)
    return {to_camel(name): value for name, value in values.items()}


def decode_rows(dataset: str, rows: list[dict[str, Any]], source: str) -> list[Record]:
    """Decode backend rows, dropping rows that cannot be shaped.

    ``source`` is ``"primary"``, ``"fallback"`` or ``"snapshot"``.
    """
    cls = record_type(dataset)
    decoder = {
        "primary": cls.from_primary,
        "fallback": cls.from_fallback,
        "snapshot": cls.from_dict,
    }[source]
    records: list[Record] = []
    for row in rows:
        try:
            records.append(decoder(row))
        except ShapeMismatchError as exc:
            logger.warning("Skipping %s record in %s: %s", source, dataset, exc)
    return records
