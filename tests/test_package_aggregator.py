"""
Tests for package aggregation: grouping, merge precedence and the update path.
"""
import sqlite3

import pytest

from cleanbox.models import (
    create_package,
    create_package_event,
    fetch_orphan_events,
    fetch_packages_for_account,
    get_package_by_order_number,
    get_package_event,
    parse_timestamp,
)
from cleanbox.services import package_aggregator
from cleanbox.services.package_aggregator import aggregate_events, merge_into_existing


def ts(day, hour=10):
    return f"2026-03-{day:02d}T{hour:02d}:00:00+00:00"


@pytest.fixture
def aggregator(services):
    return services.aggregator


class TestAggregateEvents:
    """The pure reduction over one order's events."""

    def _event(self, event_id, status, timestamp, tracking_number=None, description=None, location=None):
        return {
            "id": event_id,
            "email_id": event_id,
            "status": status,
            "location": location,
            "tracking_number": tracking_number,
            "event_timestamp": timestamp,
            "description": description,
        }

    def test_latest_timestamp_wins_regardless_of_input_order(self):
        events = [
            self._event(1, "ordered", ts(1)),
            self._event(2, "shipped", ts(3)),
            self._event(3, "delivered", ts(2)),
        ]
        aggregate = aggregate_events("1001", events)
        assert aggregate.status == "shipped"
        assert aggregate.actual_delivery == ts(2)

    def test_equal_timestamps_go_to_the_later_event(self):
        events = [self._event(1, "shipped", ts(2)), self._event(2, "out_for_delivery", ts(2))]
        assert aggregate_events("1001", events).status == "out_for_delivery"

    def test_first_non_null_wins(self):
        events = [
            self._event(1, "ordered", ts(1), description='{"brand": null, "carrier": "UPS"}'),
            self._event(2, "shipped", ts(2), description='{"brand": "Acme", "carrier": "FedEx"}'),
            self._event(3, "shipped", ts(3), description='{"brand": "Other"}'),
        ]
        aggregate = aggregate_events("1001", events)
        assert aggregate.brand == "Acme"
        assert aggregate.carrier == "UPS"

    def test_latest_estimate_wins(self):
        events = [
            self._event(1, "ordered", ts(1), description='{"estimatedDelivery": "2026-03-10"}'),
            self._event(2, "shipped", ts(2), description='{"estimatedDelivery": "2026-03-12"}'),
            self._event(3, "shipped", ts(3), description='{"estimatedDelivery": "2026-03-08"}'),
        ]
        assert aggregate_events("1001", events).estimated_delivery.startswith("2026-03-12")

    def test_tracking_numbers_union_and_fallback(self):
        events = [
            self._event(1, "ordered", ts(1)),
            self._event(2, "shipped", ts(2), tracking_number="1Z1"),
            self._event(3, "shipped", ts(3), tracking_number="1Z2"),
            self._event(4, "shipped", ts(4), tracking_number="1Z1"),
        ]
        aggregate = aggregate_events("1001", events)
        assert aggregate.tracking_numbers == ["1Z1", "1Z2"]
        assert aggregate.primary_tracking_number == "1Z1"
        assert aggregate_events("1001", events[:1]).primary_tracking_number == "ORDER-1001"

    def test_unparseable_description_skips_the_event(self):
        events = [
            self._event(1, "ordered", ts(1), description='{"brand": "Acme"}'),
            self._event(2, "delivered", ts(2), tracking_number="1Z1", description="{broken"),
        ]
        aggregate = aggregate_events("1001", events)
        assert aggregate.status == "ordered"
        assert aggregate.tracking_numbers == []
        assert aggregate.actual_delivery is None

    def test_zero_usable_events(self):
        aggregate = aggregate_events("1001", [self._event(1, "shipped", ts(1), description="[]")])
        assert aggregate.status == "unknown"
        assert aggregate.brand is None
        assert aggregate.latest_timestamp is None
        assert aggregate.primary_tracking_number == "ORDER-1001"


class TestMergeIntoExisting:
    def _existing(self, **overrides):
        package = {
            "id": 1,
            "email_id": 1,
            "order_number": "1001",
            "tracking_number": "1Z1",
            "tracking_numbers": ["1Z1"],
            "status": "shipped",
            "current_location": "Oakland, CA",
            "brand": "Acme",
            "items": None,
            "item_name": None,
            "order_date": None,
            "tracking_url": None,
            "carrier": None,
            "carrier_raw": None,
            "destination_city": None,
            "destination_state": None,
            "destination_zip": None,
            "estimated_delivery": "2026-03-10T00:00:00+00:00",
            "actual_delivery": "2026-03-04T10:00:00+00:00",
        }
        package.update(overrides)
        return package

    def _aggregate(self, **fields):
        aggregate = package_aggregator.OrderAggregate(order_number="1001")
        for name, value in fields.items():
            setattr(aggregate, name, value)
        return aggregate

    def test_first_wins_fields_only_fill_gaps(self):
        updates = merge_into_existing(
            self._existing(), self._aggregate(brand="Other", carrier="UPS"), latest_linked=None
        )
        assert "brand" not in updates
        assert updates["carrier"] == "UPS"

    def test_actual_delivery_is_never_overwritten(self):
        updates = merge_into_existing(
            self._existing(), self._aggregate(actual_delivery=ts(9)), latest_linked=None
        )
        assert "actual_delivery" not in updates

    def test_estimated_delivery_takes_group_value(self):
        updates = merge_into_existing(
            self._existing(), self._aggregate(estimated_delivery="2026-03-07T00:00:00+00:00"), latest_linked=None
        )
        assert updates["estimated_delivery"] == "2026-03-07T00:00:00+00:00"
        assert "estimated_delivery" not in merge_into_existing(self._existing(), self._aggregate(), None)

    def test_real_primary_is_kept_fallback_is_replaced(self):
        updates = merge_into_existing(self._existing(), self._aggregate(tracking_numbers=["1Z9"]), None)
        assert updates["tracking_number"] == "1Z1"
        assert updates["tracking_numbers"] == ["1Z1", "1Z9"]

        fallback = self._existing(tracking_number="ORDER-1001", tracking_numbers=[])
        updates = merge_into_existing(fallback, self._aggregate(tracking_numbers=["1Z9"]), None)
        assert updates["tracking_number"] == "1Z9"

    def test_status_moves_only_forward_in_time(self):
        older = self._aggregate(status="ordered", latest_timestamp=parse_timestamp(ts(1)))
        assert "status" not in merge_into_existing(self._existing(), older, parse_timestamp(ts(2)))

        newer = self._aggregate(status="delivered", current_location="Home", latest_timestamp=parse_timestamp(ts(3)))
        updates = merge_into_existing(self._existing(), newer, parse_timestamp(ts(2)))
        assert updates["status"] == "delivered"
        assert updates["current_location"] == "Home"


class TestAggregator:
    def test_issue_example_status_is_latest(self, aggregator, account, make_event):
        make_event("1001", "ordered", ts(1))
        make_event("1001", "shipped", ts(3))
        make_event("1001", "delivered", ts(2))

        assert aggregator.aggregate(account["id"]) == 1

        package = get_package_by_order_number("1001")
        assert package["status"] == "shipped"
        assert package["actual_delivery"] == ts(2)

    def test_one_package_per_order_number(self, aggregator, account, make_event):
        for order_number, day in [("A", 1), ("B", 2), ("A", 3), ("C", 4), ("B", 5)]:
            make_event(order_number, "shipped", ts(day))

        assert aggregator.aggregate(account["id"]) == 3
        assert fetch_orphan_events(account["id"]) == []
        assert aggregator.aggregate(account["id"]) == 0

        make_event("A", "delivered", ts(6))
        make_event("D", "ordered", ts(6))
        assert aggregator.aggregate(account["id"]) == 1
        assert len(fetch_packages_for_account(account["id"])) == 4

    def test_events_without_order_number_stay_orphaned(self, aggregator, account, make_event):
        orphan = make_event(None, "shipped", ts(1))
        make_event("1001", "shipped", ts(1))

        aggregator.aggregate(account["id"])

        assert get_package_event(orphan["id"])["package_id"] is None
        assert [e["id"] for e in fetch_orphan_events(account["id"])] == [orphan["id"]]

    def test_created_package_fields(self, aggregator, account, make_event):
        make_event(
            "1001", "ordered", ts(1),
            brand="Acme", items=[{"name": "Shoes"}], item_name="Shoes",
            estimated_delivery="2026-03-10", destination_city="San Francisco",
        )
        make_event("1001", "shipped", ts(2), tracking_number="1Z1", location="Oakland, CA",
                   carrier="UPS", estimated_delivery="2026-03-12")

        aggregator.aggregate(account["id"])

        package = get_package_by_order_number("1001")
        assert package["brand"] == "Acme"
        assert package["items"] == [{"name": "Shoes", "quantity": None, "variant": None, "price": None}]
        assert package["item_name"] == "Shoes"
        assert package["carrier"] == "UPS"
        assert package["tracking_number"] == "1Z1"
        assert package["tracking_numbers"] == ["1Z1"]
        assert package["current_location"] == "Oakland, CA"
        assert package["estimated_delivery"].startswith("2026-03-12")
        assert package["destination_city"] == "San Francisco"
        assert package["actual_delivery"] is None

    def test_brand_is_never_overwritten_by_a_later_pass(self, aggregator, account, make_event):
        make_event("1001", "ordered", ts(1), brand="Acme")
        aggregator.aggregate(account["id"])

        make_event("1001", "shipped", ts(2), brand="Acme Marketplace Seller")
        aggregator.aggregate(account["id"])

        package = get_package_by_order_number("1001")
        assert package["brand"] == "Acme"
        assert package["status"] == "shipped"

    def test_later_pass_with_older_events_keeps_status(self, aggregator, account, make_event):
        make_event("1001", "delivered", ts(5), tracking_number="1Z1")
        aggregator.aggregate(account["id"])

        make_event("1001", "shipped", ts(2), tracking_number="1Z2")
        assert aggregator.aggregate(account["id"]) == 0

        package = get_package_by_order_number("1001")
        assert package["status"] == "delivered"
        assert package["tracking_number"] == "1Z1"
        assert package["tracking_numbers"] == ["1Z1", "1Z2"]

    def test_fallback_tracking_number_is_upgraded(self, aggregator, account, make_event):
        make_event("1001", "ordered", ts(1))
        aggregator.aggregate(account["id"])
        assert get_package_by_order_number("1001")["tracking_number"] == "ORDER-1001"

        make_event("1001", "shipped", ts(2), tracking_number="1Z1")
        aggregator.aggregate(account["id"])
        assert get_package_by_order_number("1001")["tracking_number"] == "1Z1"

    def test_bad_description_event_is_still_linked(self, aggregator, account, make_email):
        email = make_email()
        event = create_package_event(
            email_id=email["id"],
            order_number="1001",
            tracking_number="1Z1",
            status="shipped",
            location=None,
            description="{broken",
            event_timestamp=ts(1),
        )

        assert aggregator.aggregate(account["id"]) == 1

        package = get_package_by_order_number("1001")
        assert package["status"] == "unknown"
        assert package["tracking_number"] == "ORDER-1001"
        assert get_package_event(event["id"])["package_id"] == package["id"]

    def test_failing_group_does_not_stop_the_others(self, aggregator, account, make_event, mocker):
        make_event("BAD", "shipped", ts(1))
        make_event("GOOD", "shipped", ts(1))
        real_create = package_aggregator.create_package

        def flaky_create(data):
            if data["order_number"] == "BAD":
                raise sqlite3.OperationalError("disk I/O error")
            return real_create(data)

        mocker.patch.object(package_aggregator, "create_package", side_effect=flaky_create)

        assert aggregator.aggregate(account["id"]) == 1
        assert get_package_by_order_number("GOOD") is not None
        assert len(fetch_orphan_events(account["id"])) == 1

    def test_lost_create_race_falls_back_to_update(self, aggregator, account, make_event, mocker):
        make_event("1001", "shipped", ts(2), tracking_number="1Z1")
        create_package({"order_number": "1001", "tracking_number": "ORDER-1001", "status": "ordered"})
        real_lookup = package_aggregator.get_package_by_order_number
        calls = []

        def racing_lookup(order_number):
            calls.append(order_number)
            return None if len(calls) == 1 else real_lookup(order_number)

        mocker.patch.object(package_aggregator, "get_package_by_order_number", side_effect=racing_lookup)

        assert aggregator.aggregate(account["id"]) == 0
        package = real_lookup("1001")
        assert package["status"] == "shipped"
        assert package["tracking_number"] == "1Z1"

    def test_rebuild_packages(self, aggregator, account, make_event):
        make_event("1001", "shipped", ts(1))
        make_event("1002", "shipped", ts(1))
        aggregator.aggregate(account["id"])

        assert aggregator.rebuild_packages(account["id"]) == 2

        rebuilt = get_package_by_order_number("1001")
        assert rebuilt is not None
        assert fetch_orphan_events(account["id"]) == []
