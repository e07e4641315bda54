"""Tests for the scan pipeline with a mocked Gmail fetcher and extraction client."""
import pytest

from cleanbox.errors import ExternalApiError, RateLimitExceededError
from cleanbox.models import (
    PackageDetails,
    PromoDetails,
    create_email_account,
    fetch_promo_codes_for_email,
    get_email_by_message_id,
    get_event_by_email_id,
    get_package_by_order_number,
)
from cleanbox.services.gmail_fetcher import GmailMessage


def _message(message_id, subject="Hello", sender="Shop <deals@shop.example>", body="<p>Hi</p>"):
    return GmailMessage(
        id=message_id,
        subject=subject,
        sender=sender,
        recipient="shopper@example.com",
        sent_at="2026-03-01T10:00:00+00:00",
        snippet="Hi",
        body=body,
        size=2048,
    )


@pytest.fixture
def mailbox(gmail_fetcher):
    """Wire the fetcher mock to a category -> messages mapping."""
    boxes = {"promotions": [], "updates": []}

    def list_messages(account, category="promotions", max_results=50, newer_than="90d"):
        return [message.id for message in boxes[category]]

    def get_message(account, message_id):
        for messages in boxes.values():
            for message in messages:
                if message.id == message_id:
                    return message
        return None

    gmail_fetcher.list_messages.side_effect = list_messages
    gmail_fetcher.get_message.side_effect = get_message
    return boxes


@pytest.fixture
def scan_service(services):
    return services.scan_service


def test_routes_messages_by_category(scan_service, account, mailbox, extraction_client):
    mailbox["promotions"].append(_message("p1", subject="25% off"))
    mailbox["updates"].append(_message("u1", subject="Shipped", sender="Shop <orders@shop.example>"))
    extraction_client.extract_package_details.return_value = PackageDetails(
        is_order_tracking=True, order_number="1001", status="shipped"
    )

    assert scan_service.scan(account) == 2

    extraction_client.extract_promo_details.assert_called_once()
    assert extraction_client.extract_promo_details.call_args.args[0] == "25% off"
    extraction_client.extract_package_details.assert_called_once()
    assert extraction_client.extract_package_details.call_args.args[0] == "Shipped"
    assert get_email_by_message_id("p1")["size"] == 2048
    assert get_event_by_email_id(get_email_by_message_id("u1")["id"]) is not None


def test_list_uses_configured_window(scan_service, account, mailbox, gmail_fetcher):
    scan_service.scan(account)
    for call in gmail_fetcher.list_messages.call_args_list:
        assert call.kwargs["max_results"] == scan_service.max_results
        assert call.kwargs["newer_than"] == scan_service.newer_than
    assert [call.kwargs["category"] for call in gmail_fetcher.list_messages.call_args_list] == [
        "promotions",
        "updates",
    ]


def test_already_stored_messages_are_skipped(scan_service, account, mailbox, gmail_fetcher, make_email):
    make_email()  # stored as msg-1
    mailbox["promotions"].extend([_message("msg-1"), _message("p2")])

    assert scan_service.scan(account) == 1
    fetched = [call.args[1] for call in gmail_fetcher.get_message.call_args_list]
    assert fetched == ["p2"]


def test_message_gone_from_gmail_is_skipped(scan_service, account, gmail_fetcher):
    gmail_fetcher.list_messages.side_effect = lambda account, category, **kwargs: (
        ["gone"] if category == "promotions" else []
    )
    gmail_fetcher.get_message.return_value = None

    assert scan_service.scan(account) == 0
    assert get_email_by_message_id("gone") is None


def test_promo_codes_share_the_first_discount(scan_service, account, mailbox, extraction_client):
    mailbox["promotions"].append(_message("p1"))
    extraction_client.extract_promo_details.return_value = PromoDetails(
        code="SPRING25", discount_raw="25% off", brand="Acme", category="Fashion"
    )

    scan_service.scan(account)

    promos = fetch_promo_codes_for_email(get_email_by_message_id("p1")["id"])
    assert len(promos) == 1
    assert promos[0]["code"] == "SPRING25"
    assert promos[0]["discount_raw"] == "25% off"
    assert promos[0]["brand"] == "Acme"
    assert promos[0]["category"] == "Fashion"


def test_discount_without_code_is_saved_once(scan_service, account, mailbox, extraction_client):
    mailbox["promotions"].append(_message("p1"))
    extraction_client.extract_promo_details.return_value = PromoDetails(discount_raw="Free shipping")

    scan_service.scan(account)

    promos = fetch_promo_codes_for_email(get_email_by_message_id("p1")["id"])
    assert [(p["code"], p["discount_raw"], p["category"]) for p in promos] == [(None, "Free shipping", "Other")]


def test_nothing_found_saves_nothing(scan_service, account, mailbox):
    mailbox["promotions"].append(_message("p1"))
    assert scan_service.scan(account) == 1
    assert fetch_promo_codes_for_email(get_email_by_message_id("p1")["id"]) == []


def test_one_failing_message_does_not_stop_the_scan(scan_service, account, mailbox, extraction_client):
    mailbox["promotions"].extend([_message("p1"), _message("p2")])
    extraction_client.extract_promo_details.side_effect = [
        ExternalApiError.openai_timeout(),
        PromoDetails(code="SAVE10"),
    ]

    assert scan_service.scan(account) == 1
    assert fetch_promo_codes_for_email(get_email_by_message_id("p2")["id"])[0]["code"] == "SAVE10"


def test_rate_limit_aborts_the_scan(scan_service, account, mailbox, extraction_client, services, mocker):
    mailbox["promotions"].extend([_message("p1"), _message("p2")])
    extraction_client.extract_promo_details.side_effect = RateLimitExceededError("OpenAI", 20)
    aggregate = mocker.spy(services.aggregator, "aggregate")

    with pytest.raises(RateLimitExceededError):
        scan_service.scan(account)

    assert extraction_client.extract_promo_details.call_count == 1
    aggregate.assert_not_called()


def test_rate_limited_message_is_extracted_on_rescan(scan_service, account, mailbox, extraction_client):
    mailbox["updates"].append(_message("u1", sender="Shop <orders@shop.example>"))
    extraction_client.extract_package_details.side_effect = [
        RateLimitExceededError("OpenAI", 20),
        PackageDetails(is_order_tracking=True, order_number="1001", status="shipped"),
    ]

    with pytest.raises(RateLimitExceededError):
        scan_service.scan(account)
    assert get_email_by_message_id("u1") is None

    assert scan_service.scan(account) == 1
    assert extraction_client.extract_package_details.call_count == 2
    event = get_event_by_email_id(get_email_by_message_id("u1")["id"])
    assert event["order_number"] == "1001"
    assert get_package_by_order_number("1001")["status"] == "shipped"


def test_rate_limited_promo_is_extracted_on_rescan(scan_service, account, mailbox, extraction_client):
    mailbox["promotions"].append(_message("p1"))
    extraction_client.extract_promo_details.side_effect = [
        RateLimitExceededError("OpenAI"),
        PromoDetails(code="SPRING25", discount_raw="25% off"),
    ]

    with pytest.raises(RateLimitExceededError):
        scan_service.scan(account)
    scan_service.scan(account)

    promos = fetch_promo_codes_for_email(get_email_by_message_id("p1")["id"])
    assert [p["code"] for p in promos] == ["SPRING25"]


def test_aggregates_once_after_all_messages(scan_service, account, mailbox, extraction_client, services, mocker):
    mailbox["updates"].extend(
        [
            _message("u1", sender="Shop <orders@shop.example>"),
            _message("u2", sender="Shop <orders@shop.example>"),
        ]
    )
    extraction_client.extract_package_details.side_effect = [
        PackageDetails(is_order_tracking=True, order_number="1001", status="ordered", brand="Acme"),
        PackageDetails(is_order_tracking=True, order_number="1001", status="shipped", tracking_number="1Z1"),
    ]
    aggregate = mocker.spy(services.aggregator, "aggregate")

    scan_service.scan(account)

    aggregate.assert_called_once_with(account["id"])
    package = get_package_by_order_number("1001")
    assert package["brand"] == "Acme"
    assert package["tracking_number"] == "1Z1"


def test_auto_delete_trashes_processed_messages(scan_service, mailbox, gmail_fetcher, app_context):
    account = create_email_account(email="cleaner@example.com", access_token="t", auto_delete_emails=True)
    mailbox["promotions"].append(_message("p1"))
    mailbox["updates"].append(_message("u1"))

    scan_service.scan(account)

    gmail_fetcher.trash_messages.assert_called_once_with(account, ["p1", "u1"])


def test_no_trash_without_auto_delete(scan_service, account, mailbox, gmail_fetcher):
    mailbox["promotions"].append(_message("p1"))
    scan_service.scan(account)
    gmail_fetcher.trash_messages.assert_not_called()
