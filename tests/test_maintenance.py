"""Tests for event regeneration and body refetching."""
import pytest

from cleanbox.errors import NotFoundError
from cleanbox.models import PackageDetails, get_package_event
from cleanbox.services.maintenance import refetch_body, regenerate_events, reprocess_event


def test_regenerate_counts_each_outcome(services, account, make_event, extraction_client):
    first = make_event("1001", "ordered", "2026-03-01T10:00:00+00:00")
    make_event("1002", "ordered", "2026-03-02T10:00:00+00:00")
    make_event("1003", "ordered", "2026-03-03T10:00:00+00:00")
    extraction_client.extract_package_details.side_effect = [
        PackageDetails(is_order_tracking=True, order_number="1001", status="shipped"),
        PackageDetails(is_order_tracking=False),
        RuntimeError("unexpected"),
    ]

    result = regenerate_events(services, account["id"], delay=0)

    assert (result.success, result.skipped, result.errors, result.total) == (1, 1, 1, 3)
    assert get_package_event(first["id"])["status"] == "shipped"


def test_regenerate_keeps_package_links(services, account, make_event, extraction_client):
    event = make_event("1001", "ordered", "2026-03-01T10:00:00+00:00")
    services.aggregator.aggregate(account["id"])
    package_id = get_package_event(event["id"])["package_id"]
    extraction_client.extract_package_details.return_value = PackageDetails(
        is_order_tracking=True, order_number="1001", status="delivered"
    )

    regenerate_events(services, account["id"], delay=0)

    assert get_package_event(event["id"])["package_id"] == package_id


def test_regenerate_unknown_account(services, app_context):
    with pytest.raises(NotFoundError):
        regenerate_events(services, 77, delay=0)


def test_reprocess_missing_email(services, app_context):
    with pytest.raises(NotFoundError):
        reprocess_event(services, 12345)


def test_refetch_body_missing_email(services, app_context):
    with pytest.raises(NotFoundError):
        refetch_body(services, 12345)
