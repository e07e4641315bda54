"""
Pytest configuration and fixtures.

Every test gets a fresh app on a temporary SQLite file. Gmail and OpenAI are
replaced by MagicMock clients, so no test touches the network.
"""
from unittest.mock import MagicMock

import pytest

from cleanbox.app import create_app
from cleanbox.config import TestConfig
from cleanbox.extensions import close_services, get_services
from cleanbox.models import EventDescription, create_email, create_email_account, create_package_event
from cleanbox.services.extraction_client import ExtractionClient
from cleanbox.services.gmail_fetcher import GmailMessageFetcher


@pytest.fixture
def extraction_client():
    """Extraction client that finds nothing unless a test says otherwise."""
    client = MagicMock(spec=ExtractionClient)
    client.extract_promo_details.return_value = None
    client.extract_package_details.return_value = None
    return client


@pytest.fixture
def gmail_fetcher():
    fetcher = MagicMock(spec=GmailMessageFetcher)
    fetcher.list_messages.return_value = []
    fetcher.trash_messages.return_value = 0
    return fetcher


@pytest.fixture
def app(tmp_path, extraction_client, gmail_fetcher):
    app = create_app(
        TestConfig,
        overrides={"DATABASE_PATH": str(tmp_path / "cleanbox-test.sqlite3")},
        extraction_client=extraction_client,
        fetcher=gmail_fetcher,
    )
    yield app
    close_services(get_services(app))


@pytest.fixture
def app_context(app):
    with app.app_context():
        yield app


@pytest.fixture
def services(app):
    return get_services(app)


@pytest.fixture
def account(app_context):
    return create_email_account(
        email="shopper@example.com",
        access_token="test-access-token",
        refresh_token="test-refresh-token",
    )


@pytest.fixture
def make_email(account):
    """Factory for stored emails of the test account."""
    counter = {"n": 0}

    def _make(
        sender="Shop <orders@shop.example>",
        subject="Your order has shipped",
        sent_at="2026-03-01T10:00:00+00:00",
        body="<p>Your order #1001 is on its way</p>",
        snippet="Your order is on its way",
        account_id=None,
    ):
        counter["n"] += 1
        return create_email(
            email_account_id=account_id or account["id"],
            gmail_message_id=f"msg-{counter['n']}",
            subject=subject,
            sender=sender,
            recipient=account["email"],
            sent_at=sent_at,
            snippet=snippet,
            body=body,
            size=1024,
        )

    return _make


@pytest.fixture
def make_event(make_email):
    """Factory for orphan package events, each on its own email."""

    def _make(order_number, status, event_timestamp, tracking_number=None, location=None, **description):
        email = make_email(sent_at=event_timestamp)
        return create_package_event(
            email_id=email["id"],
            order_number=order_number,
            tracking_number=tracking_number,
            status=status,
            location=location,
            description=EventDescription(**description).to_json(),
            event_timestamp=event_timestamp,
        )

    return _make
