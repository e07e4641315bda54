"""
Scan orchestration for one email account.

A scan lists recent Gmail messages in the promotions and updates categories,
stores every new message, runs promo extraction on promotions and package
event extraction on updates, then aggregates package events once at the end.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List

from cleanbox.errors import RateLimitExceededError
from cleanbox.models import create_email, delete_email, get_existing_message_ids
from cleanbox.services.gmail_fetcher import GmailMessageFetcher
from cleanbox.services.package_aggregator import PackageAggregator
from cleanbox.services.package_extraction import PackageExtractionService
from cleanbox.services.promo_extraction import PromoExtractionService

logger = logging.getLogger(__name__)

PROMOTIONS = "promotions"
UPDATES = "updates"
SCAN_CATEGORIES = (PROMOTIONS, UPDATES)


class ScanService:
    def __init__(
        self,
        fetcher: GmailMessageFetcher,
        promo_extraction: PromoExtractionService,
        package_extraction: PackageExtractionService,
        aggregator: PackageAggregator,
        max_results: int = 200,
        newer_than: str = "90d",
    ) -> None:
        self.fetcher = fetcher
        self.promo_extraction = promo_extraction
        self.package_extraction = package_extraction
        self.aggregator = aggregator
        self.max_results = max_results
        self.newer_than = newer_than

    def _list_new_messages(self, account: Dict[str, Any]) -> Dict[str, str]:
        """Message id -> category for listed messages not stored yet."""
        listed: Dict[str, str] = {}
        for category in SCAN_CATEGORIES:
            for message_id in self.fetcher.list_messages(
                account, category=category, max_results=self.max_results, newer_than=self.newer_than
            ):
                listed.setdefault(message_id, category)

        existing = set(get_existing_message_ids(list(listed)))
        return {message_id: category for message_id, category in listed.items() if message_id not in existing}

    def scan(self, account: Dict[str, Any]) -> int:
        """
        Scan an account and return the number of messages processed.

        A failure on one message is logged and the scan moves on, except
        RateLimitExceededError which aborts the scan so the job can be retried.
        The message that hit the rate limit is not kept, so the retry picks it up.
        """
        account_id = account["id"]
        new_messages = self._list_new_messages(account)
        logger.info(f"Found {len(new_messages)} new messages to scan for account {account_id}")

        processed = 0
        to_trash: List[str] = []

        for message_id, category in new_messages.items():
            email = None
            try:
                message = self.fetcher.get_message(account, message_id)
                if message is None:
                    continue

                email = create_email(
                    email_account_id=account_id,
                    gmail_message_id=message.id,
                    subject=message.subject,
                    sender=message.sender,
                    recipient=message.recipient,
                    sent_at=message.sent_at,
                    snippet=message.snippet,
                    body=message.body,
                    size=message.size,
                )

                if category == PROMOTIONS:
                    saved = self.promo_extraction.extract_and_store(email)
                    if not saved:
                        logger.info(f"No promo found in message {message_id}")
                else:
                    self.package_extraction.extract_package_event(email)

                if account.get("auto_delete_emails"):
                    to_trash.append(message_id)
                processed += 1
            except RateLimitExceededError:
                logger.warning(f"Rate limited while scanning account {account_id}, aborting scan")
                # Unstore the message so the retried scan lists it again
                if email is not None:
                    delete_email(email["id"])
                raise
            except Exception:
                logger.exception(f"Failed to process message {message_id}")

        # Orders spanning several messages need the whole batch of events first
        created = self.aggregator.aggregate(account_id)
        logger.info(f"Aggregation created {created} packages for account {account_id}")

        if to_trash:
            logger.info(f"Auto-delete enabled: moving {len(to_trash)} emails to Gmail trash")
            self.fetcher.trash_messages(account, to_trash)

        return processed
