"""
Operator maintenance tasks behind the CLI: re-extracting package events and
backfilling email bodies from Gmail.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from cleanbox.errors import NotFoundError
from cleanbox.models import (
    fetch_events_for_account,
    get_email_account,
    get_email_by_id,
    update_email_body,
)

if TYPE_CHECKING:
    from cleanbox.extensions import Services

logger = logging.getLogger(__name__)

# Pause between assistant calls when regenerating many events
REGENERATE_DELAY_SECONDS = 0.5


@dataclass
class RegenerateResult:
    success: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.success + self.skipped + self.errors


def reprocess_event(services: "Services", email_id: int) -> bool:
    """Force re-extraction of the package event for one email."""
    email = get_email_by_id(email_id)
    if email is None:
        raise NotFoundError.email_not_found(email_id)
    return services.package_extraction.extract_package_event(email, force=True)


def regenerate_events(
    services: "Services",
    email_account_id: int,
    delay: float = REGENERATE_DELAY_SECONDS,
) -> RegenerateResult:
    """Re-extract every package event of an account in place (linked packages are kept)."""
    if get_email_account(email_account_id) is None:
        raise NotFoundError.email_account_not_found(email_account_id)

    events = fetch_events_for_account(email_account_id)
    logger.info(f"Found {len(events)} events to regenerate for account {email_account_id}")

    result = RegenerateResult()
    for index, event in enumerate(events, start=1):
        logger.info(f"[{index}/{len(events)}] Processing event {event['id']} (email {event['email_id']})")
        try:
            if services.package_extraction.extract_for_email_id(event["email_id"], force=True):
                result.success += 1
            else:
                result.skipped += 1
        except Exception as exc:
            logger.error(f"Failed to regenerate event {event['id']}: {exc}")
            result.errors += 1
        if delay:
            time.sleep(delay)

    logger.info(
        f"Regeneration complete: {result.success} updated, "
        f"{result.skipped} skipped, {result.errors} errors"
    )
    return result


def refetch_body(services: "Services", email_id: int) -> Optional[int]:
    """
    Fetch an email again from Gmail and overwrite its stored body and size.

    Returns the new body length, or None when Gmail no longer has the message.
    """
    email = get_email_by_id(email_id)
    if email is None:
        raise NotFoundError.email_not_found(email_id)
    account = get_email_account(email["email_account_id"])
    if account is None:
        raise NotFoundError.email_account_not_found(email["email_account_id"])

    logger.info(f"Refetching email {email_id} (gmail id {email['gmail_message_id']}), current body {len(email['body'] or '')} chars")
    message = services.fetcher.get_message(account, email["gmail_message_id"])
    if message is None:
        logger.error(f"Gmail no longer has message {email['gmail_message_id']}")
        return None

    update_email_body(email_id, message.body, message.size)
    logger.info(f"Updated email {email_id}: new body {len(message.body)} chars")
    return len(message.body)
