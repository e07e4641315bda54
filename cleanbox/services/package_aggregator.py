"""
Package aggregation: orphan PackageEvents -> one canonical Package per order.

Run after a scan has written all of its events. For each order number the
events are sorted by timestamp and reduced field by field:

- status / current_location: from the latest event (ties: the later one in order)
- tracking numbers: union; the first one seen is primary, else ORDER-<order_number>
- brand, items, item_name, order_date, tracking_url, carrier, carrier_raw and
  destination fields: first non-null value wins
- estimated_delivery: the latest estimate wins
- actual_delivery: timestamp of the first "delivered" event

The result is written to a new package, or merged into the existing one
(see `merge_into_existing`), and every event in the group is linked to it.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from cleanbox.models import (
    EventDescription,
    create_package,
    delete_packages_for_account,
    fetch_events_for_package,
    fetch_orphan_events,
    get_package_by_order_number,
    link_events_to_package,
    parse_timestamp,
    reset_event_links,
    update_package,
)

logger = logging.getLogger(__name__)

FALLBACK_TRACKING_PREFIX = "ORDER-"
DELIVERED = "delivered"

# Fields where the first non-null value (in timestamp order) is kept
FIRST_WINS_FIELDS = (
    "brand",
    "items",
    "item_name",
    "order_date",
    "tracking_url",
    "carrier",
    "carrier_raw",
    "destination_city",
    "destination_state",
    "destination_zip",
)

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def fallback_tracking_number(order_number: str) -> str:
    return f"{FALLBACK_TRACKING_PREFIX}{order_number}"


@dataclass
class OrderAggregate:
    """The reduced view of one order's events."""

    order_number: str
    email_id: Optional[int] = None
    status: str = "unknown"
    current_location: Optional[str] = None
    latest_timestamp: Optional[datetime] = None
    tracking_numbers: List[str] = field(default_factory=list)
    brand: Optional[str] = None
    items: Optional[List[Dict[str, Any]]] = None
    item_name: Optional[str] = None
    order_date: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    carrier_raw: Optional[str] = None
    destination_city: Optional[str] = None
    destination_state: Optional[str] = None
    destination_zip: Optional[str] = None
    estimated_delivery: Optional[str] = None
    actual_delivery: Optional[str] = None

    @property
    def primary_tracking_number(self) -> str:
        if self.tracking_numbers:
            return self.tracking_numbers[0]
        return fallback_tracking_number(self.order_number)

    def to_package_fields(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in FIRST_WINS_FIELDS}
        data.update(
            email_id=self.email_id,
            order_number=self.order_number,
            tracking_number=self.primary_tracking_number,
            tracking_numbers=list(self.tracking_numbers),
            status=self.status,
            current_location=self.current_location,
            estimated_delivery=self.estimated_delivery,
            actual_delivery=self.actual_delivery,
        )
        return data


def _event_sort_key(event: Dict[str, Any]):
    return (parse_timestamp(event.get("event_timestamp")) or _EPOCH, event["id"])


def aggregate_events(order_number: str, events: List[Dict[str, Any]]) -> OrderAggregate:
    """Reduce one order's events into an OrderAggregate.

    Events whose description does not validate are skipped entirely.
    """
    ordered = sorted(events, key=_event_sort_key)
    aggregate = OrderAggregate(order_number=order_number)
    if ordered:
        aggregate.email_id = ordered[0].get("email_id")

    latest_estimate: Optional[datetime] = None

    for event in ordered:
        try:
            description = EventDescription.parse(event.get("description"))
        except ValidationError as exc:
            logger.warning(f"Skipping event {event['id']} with unparseable description: {exc.error_count()} error(s)")
            continue

        timestamp = parse_timestamp(event.get("event_timestamp")) or _EPOCH

        if aggregate.latest_timestamp is None or timestamp >= aggregate.latest_timestamp:
            aggregate.status = event.get("status") or "unknown"
            aggregate.current_location = event.get("location")
            aggregate.latest_timestamp = timestamp

        tracking_number = event.get("tracking_number")
        if tracking_number and tracking_number not in aggregate.tracking_numbers:
            aggregate.tracking_numbers.append(tracking_number)

        for name in FIRST_WINS_FIELDS:
            if getattr(aggregate, name) is None:
                value = getattr(description, name)
                if name == "items" and value is not None:
                    value = [item.model_dump() for item in value]
                if value:
                    setattr(aggregate, name, value)

        estimate = parse_timestamp(description.estimated_delivery)
        if estimate is not None and (latest_estimate is None or estimate > latest_estimate):
            latest_estimate = estimate
            aggregate.estimated_delivery = description.estimated_delivery

        if event.get("status") == DELIVERED and aggregate.actual_delivery is None:
            aggregate.actual_delivery = timestamp.isoformat()

    return aggregate


def merge_into_existing(
    existing: Dict[str, Any],
    aggregate: OrderAggregate,
    latest_linked: Optional[datetime],
) -> Dict[str, Any]:
    """
    Column updates for an existing package.

    - first-wins fields and actual_delivery only fill gaps
    - estimated_delivery takes the group's value when it has one
    - tracking numbers are unioned; a real primary is kept, an ORDER- fallback is replaced
    - status / location move only if the group is at least as recent as what is linked
    """
    updates: Dict[str, Any] = {}

    for name in FIRST_WINS_FIELDS + ("actual_delivery", "email_id"):
        if existing.get(name) is None and getattr(aggregate, name) is not None:
            updates[name] = getattr(aggregate, name)

    if aggregate.estimated_delivery is not None:
        updates["estimated_delivery"] = aggregate.estimated_delivery

    tracking_numbers = list(existing.get("tracking_numbers") or [])
    for number in aggregate.tracking_numbers:
        if number not in tracking_numbers:
            tracking_numbers.append(number)
    updates["tracking_numbers"] = tracking_numbers

    primary = existing.get("tracking_number")
    if not primary or primary.startswith(FALLBACK_TRACKING_PREFIX):
        primary = tracking_numbers[0] if tracking_numbers else fallback_tracking_number(aggregate.order_number)
    updates["tracking_number"] = primary

    if aggregate.latest_timestamp is not None and (
        latest_linked is None or aggregate.latest_timestamp >= latest_linked
    ):
        updates["status"] = aggregate.status
        updates["current_location"] = aggregate.current_location

    return updates


class PackageAggregator:
    """
    Builds packages from orphan events, one account at a time.

    Passes over the same account are serialized by a per-account lock. A create
    that loses a race on UNIQUE(order_number) falls back to the update path.
    """

    def __init__(self) -> None:
        self._locks: Dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _account_lock(self, email_account_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(email_account_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[email_account_id] = lock
            return lock

    def aggregate(self, email_account_id: int) -> int:
        """Aggregate the account's orphan events. Returns the number of packages created."""
        with self._account_lock(email_account_id):
            orphans = fetch_orphan_events(email_account_id)
            if not orphans:
                logger.info(f"No orphan events to aggregate for account {email_account_id}")
                return 0

            groups: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
            for event in orphans:
                # Without an order number an event stays orphaned
                if not event.get("order_number"):
                    continue
                groups.setdefault(event["order_number"], []).append(event)

            logger.info(f"Aggregating {len(groups)} orders from {len(orphans)} events for account {email_account_id}")

            created = 0
            for order_number, events in groups.items():
                try:
                    if self._aggregate_order(order_number, events):
                        created += 1
                except Exception:
                    logger.exception(f"Failed to aggregate events for order {order_number}")
            return created

    def _aggregate_order(self, order_number: str, events: List[Dict[str, Any]]) -> bool:
        """Create or update the order's package and link its events. True if created."""
        aggregate = aggregate_events(order_number, events)
        created = False

        package = get_package_by_order_number(order_number)
        if package is None:
            try:
                package = create_package(aggregate.to_package_fields())
                created = True
                logger.info(
                    f"Created package for order {order_number} "
                    f"with {len(aggregate.tracking_numbers)} tracking numbers"
                )
            except sqlite3.IntegrityError:
                package = get_package_by_order_number(order_number)
                if package is None:
                    raise
                logger.info(f"Package for order {order_number} was created concurrently, updating it")

        if not created:
            latest_linked = max(
                (parse_timestamp(e["event_timestamp"]) or _EPOCH for e in fetch_events_for_package(package["id"])),
                default=None,
            )
            package = update_package(package["id"], merge_into_existing(package, aggregate, latest_linked))
            logger.info(f"Updated package for order {order_number}")

        link_events_to_package([event["id"] for event in events], package["id"])
        return created

    def rebuild_packages(self, email_account_id: int) -> int:
        """Delete the account's packages, orphan its events and aggregate again."""
        with self._account_lock(email_account_id):
            deleted = delete_packages_for_account(email_account_id)
            reset = reset_event_links(email_account_id)
            logger.info(f"Deleted {deleted} packages and reset {reset} events for account {email_account_id}")
            return self.aggregate(email_account_id)
