"""
Package event extraction.

Every order-update email yields at most one PackageEvent: a snapshot of the
order's status at the time the email was sent. Events start orphaned
(package_id NULL); the aggregator turns them into packages after the scan.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from cleanbox.errors import ExternalApiError, RateLimitExceededError
from cleanbox.models import (
    EventDescription,
    create_package_event,
    get_email_by_id,
    get_event_by_email_id,
    update_package_event,
)
from cleanbox.models.db import utcnow_iso
from cleanbox.services.email_cleaner import clean_email_for_ai
from cleanbox.services.extraction_client import ExtractionClient

logger = logging.getLogger(__name__)

DEFAULT_SENDER_BLACKLIST = ("paypal.com", "@paypal.")


class PackageExtractionService:
    """Turns order-tracking emails into PackageEvents. Never creates packages."""

    def __init__(
        self,
        extraction_client: ExtractionClient,
        sender_blacklist: Iterable[str] = DEFAULT_SENDER_BLACKLIST,
    ) -> None:
        self.extraction_client = extraction_client
        self.sender_blacklist = tuple(entry.lower() for entry in sender_blacklist)

    def is_blacklisted(self, sender: Optional[str]) -> bool:
        """True if the sender contains any blacklist entry (case-insensitive)."""
        sender_lower = (sender or "").lower()
        return any(entry in sender_lower for entry in self.sender_blacklist)

    def extract_package_event(self, email: Dict[str, Any], force: bool = False) -> bool:
        """
        Extract one PackageEvent from a stored email.

        Returns True when an event was created (or, with force, rewritten in
        place). Skips return False: blacklisted sender, an event already
        present, not an order-tracking email, or no order number.

        RateLimitExceededError propagates so the job can be retried; other
        extraction failures are logged and return False.
        """
        email_id = email["id"]
        sender = email.get("sender") or ""

        if self.is_blacklisted(sender):
            logger.info(f"Skipping blacklisted sender for email {email_id}: {sender}")
            return False

        existing_event = get_event_by_email_id(email_id)
        if existing_event and not force:
            logger.info(f"PackageEvent already exists for email {email_id}, skipping")
            return False

        cleaned = clean_email_for_ai(email.get("subject") or "", email.get("snippet") or "", email.get("body") or "")
        try:
            details = self.extraction_client.extract_package_details(
                cleaned.subject, sender, cleaned.text_to_scan
            )
        except RateLimitExceededError:
            raise
        except ExternalApiError as exc:
            logger.warning(f"Package extraction failed for email {email_id}: {exc}")
            return False

        if details is None or not details.is_order_tracking:
            logger.info(f"Email {email_id} is not an order tracking email")
            return False

        # Events are grouped by order number; without one nothing can be aggregated
        if not details.order_number:
            logger.info(f"No order number found in email {email_id}, cannot identify package")
            return False

        description = EventDescription.from_details(details).to_json()
        event_timestamp = email.get("sent_at") or utcnow_iso()

        if existing_event:
            update_package_event(
                event_id=existing_event["id"],
                order_number=details.order_number,
                tracking_number=details.tracking_number,
                status=details.status,
                location=details.current_location,
                description=description,
                event_timestamp=event_timestamp,
            )
            logger.info(f"Updated PackageEvent {existing_event['id']} for order {details.order_number}")
        else:
            create_package_event(
                email_id=email_id,
                order_number=details.order_number,
                tracking_number=details.tracking_number,
                status=details.status,
                location=details.current_location,
                description=description,
                event_timestamp=event_timestamp,
            )
            logger.info(
                f"Created PackageEvent for order {details.order_number} "
                f"tracking {details.tracking_number or 'N/A'} (status: {details.status})"
            )
        return True

    def extract_for_email_id(self, email_id: int, force: bool = False) -> bool:
        """Look up the email first; a missing row is logged and returns False."""
        email = get_email_by_id(email_id)
        if email is None:
            logger.warning(f"Email {email_id} not found, no package event extracted")
            return False
        return self.extract_package_event(email, force=force)
