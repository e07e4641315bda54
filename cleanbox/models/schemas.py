"""
Pydantic models for what the extraction assistants return and what a
package event stores.

The assistants answer in camelCase JSON (`orderNumber`, `isOrderTracking`, ...),
so every model accepts both the camelCase alias and the snake_case name.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

ITEM_NAME_MAX_LENGTH = 80


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into an aware UTC-based datetime.

    Naive values are taken as UTC. Anything unparseable returns None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso_or_none(value: Any) -> Optional[str]:
    dt = parse_timestamp(value)
    return dt.isoformat() if dt else None


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class PromoDetails(_CamelModel):
    """Promo assistant answer."""

    code: Optional[str] = None
    discount_raw: Optional[str] = None
    brand: Optional[str] = None
    summary: Optional[str] = None
    category: str = "Other"
    url: Optional[str] = None
    expires_at: Optional[str] = None
    confidence: float = 0.0

    @field_validator("code", "discount_raw", "brand", "summary", "url", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Optional[str]:
        return _str_or_none(value)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value: Any) -> str:
        return _str_or_none(value) or "Other"

    @field_validator("expires_at", mode="before")
    @classmethod
    def _expiry(cls, value: Any) -> Optional[str]:
        return _iso_or_none(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float:
        return value if value is not None else 0.0


class PackageItem(_CamelModel):
    name: Optional[str] = None
    quantity: Optional[int] = None
    variant: Optional[str] = None
    price: Optional[str] = None

    @field_validator("name", "variant", "price", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> Optional[str]:
        return _str_or_none(value)


class PackageDetails(_CamelModel):
    """Package assistant answer for one email."""

    is_order_tracking: bool = False
    order_number: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    carrier_raw: Optional[str] = None
    status: str = "unknown"
    brand: Optional[str] = None
    items: Optional[List[PackageItem]] = None
    order_date: Optional[str] = None
    estimated_delivery: Optional[str] = None
    current_location: Optional[str] = None
    destination_city: Optional[str] = None
    destination_state: Optional[str] = None
    destination_zip: Optional[str] = None
    confidence: float = 0.0

    @field_validator(
        "order_number",
        "tracking_number",
        "tracking_url",
        "carrier",
        "carrier_raw",
        "brand",
        "current_location",
        "destination_city",
        "destination_state",
        "destination_zip",
        mode="before",
    )
    @classmethod
    def _strings(cls, value: Any) -> Optional[str]:
        return _str_or_none(value)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        text = _str_or_none(value)
        return text.lower() if text else "unknown"

    @field_validator("order_date", "estimated_delivery", mode="before")
    @classmethod
    def _dates(cls, value: Any) -> Optional[str]:
        return _iso_or_none(value)

    @field_validator("items", mode="before")
    @classmethod
    def _items(cls, value: Any) -> Any:
        # An empty list carries no information; store it as missing
        if not value:
            return None
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float:
        return value if value is not None else 0.0

    def item_name(self) -> Optional[str]:
        """Short display name built from the items, truncated for list views."""
        names = [item.name for item in self.items or [] if item.name]
        if not names:
            return None
        name = ", ".join(names)
        if len(name) <= ITEM_NAME_MAX_LENGTH:
            return name
        return name[:ITEM_NAME_MAX_LENGTH - 3] + "..."


class EventDescription(_CamelModel):
    """Secondary fields of a package event, stored as JSON in `description`.

    Every field is optional; an event whose stored JSON does not validate
    against this model is skipped by the aggregator.
    """

    brand: Optional[str] = None
    items: Optional[List[PackageItem]] = None
    item_name: Optional[str] = None
    order_date: Optional[str] = None
    estimated_delivery: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    carrier_raw: Optional[str] = None
    destination_city: Optional[str] = None
    destination_state: Optional[str] = None
    destination_zip: Optional[str] = None

    @field_validator("order_date", "estimated_delivery", mode="before")
    @classmethod
    def _dates(cls, value: Any) -> Optional[str]:
        return _iso_or_none(value)

    @classmethod
    def from_details(cls, details: PackageDetails) -> "EventDescription":
        return cls(
            brand=details.brand,
            items=details.items,
            item_name=details.item_name(),
            order_date=details.order_date,
            estimated_delivery=details.estimated_delivery,
            tracking_url=details.tracking_url,
            carrier=details.carrier,
            carrier_raw=details.carrier_raw,
            destination_city=details.destination_city,
            destination_state=details.destination_state,
            destination_zip=details.destination_zip,
        )

    @classmethod
    def parse(cls, raw: Optional[str]) -> "EventDescription":
        """Validate a stored description; NULL means an empty description.

        Raises pydantic.ValidationError on malformed JSON or wrong shapes.
        """
        if not raw:
            return cls()
        return cls.model_validate_json(raw)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
