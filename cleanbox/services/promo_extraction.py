"""Promo code extraction: promotional email -> PromoCode rows."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cleanbox.models import PromoDetails, create_promo_code
from cleanbox.services.email_cleaner import clean_email_for_ai
from cleanbox.services.extraction_client import ExtractionClient

logger = logging.getLogger(__name__)


@dataclass
class PromoExtraction:
    codes: List[str] = field(default_factory=list)
    discounts: List[str] = field(default_factory=list)
    brand: Optional[str] = None
    summary: Optional[str] = None
    category: str = "Other"
    url: Optional[str] = None
    expires_at: Optional[str] = None

    @classmethod
    def from_details(cls, details: Optional[PromoDetails]) -> "PromoExtraction":
        if details is None:
            return cls()
        return cls(
            codes=[details.code] if details.code else [],
            discounts=[details.discount_raw] if details.discount_raw else [],
            brand=details.brand,
            summary=details.summary,
            category=details.category,
            url=details.url,
            expires_at=details.expires_at,
        )

    @property
    def is_empty(self) -> bool:
        return not self.codes and not self.discounts


class PromoExtractionService:
    def __init__(self, extraction_client: ExtractionClient) -> None:
        self.extraction_client = extraction_client

    def extract(self, subject: str, snippet: str, body: Optional[str], sender: str) -> PromoExtraction:
        """Clean the email and ask the promo assistant for codes and discounts."""
        cleaned = clean_email_for_ai(subject, snippet, body or "")
        text = cleaned.text_to_scan
        logger.debug(f"Cleaned promo email content: {len(text)} chars (from {len(body or '')} original)")
        details = self.extraction_client.extract_promo_details(cleaned.subject, sender, text)
        return PromoExtraction.from_details(details)

    def extract_and_store(self, email: Dict[str, Any]) -> int:
        """
        Extract promos from a stored email and save them.

        One PromoCode row per code, each carrying the first discount. A discount
        with no code is saved once with code NULL. Returns the number of rows saved.
        """
        result = self.extract(
            email.get("subject") or "",
            email.get("snippet") or "",
            email.get("body"),
            email.get("sender") or "",
        )
        if result.is_empty:
            return 0

        discount = result.discounts[0] if result.discounts else None
        codes: List[Optional[str]] = list(result.codes) or [None]
        for code in codes:
            create_promo_code(
                email_id=email["id"],
                code=code,
                discount_raw=discount,
                brand=result.brand,
                summary=result.summary,
                category=result.category,
                url=result.url,
                expires_at=result.expires_at,
            )
        logger.info(f"Saved {len(codes)} promo(s) for email {email['id']} ({result.brand or 'unknown brand'})")
        return len(codes)
