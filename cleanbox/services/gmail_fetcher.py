"""
Gmail message fetching for scan jobs.

This module handles everything the scanner needs from the Gmail API:
- Building (and refreshing) OAuth credentials from the stored account tokens
- Listing message ids per Gmail category (promotions / updates)
- Fetching and decoding full messages (base64url parts, RFC 2047 headers)
- Moving scanned messages to the trash (batched)
"""
from __future__ import annotations

import base64
import html
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.header import decode_header
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional

import chardet
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from cleanbox.errors import ExternalApiError, RateLimitExceededError
from cleanbox.models import update_account_tokens

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
# Calls per Gmail batch request (the API allows up to 100)
TRASH_BATCH_SIZE = 50


@dataclass
class GmailMessage:
    """A fetched message, decoded into the columns we store."""

    id: str
    subject: str
    sender: str
    recipient: str
    sent_at: Optional[str]
    snippet: str
    body: str
    size: Optional[int]


def _decode_part(data: Optional[str]) -> str:
    """
    Decode base64url-encoded email part data.

    Gmail API returns email content as base64url-encoded strings, sometimes
    without padding. UTF-8 is tried first, then chardet's guess, then latin-1.
    """
    if not data:
        return ""
    padding = -len(data) % 4
    try:
        decoded = base64.urlsafe_b64decode((data + "=" * padding).encode("ascii"))
    except (ValueError, UnicodeEncodeError):
        return ""

    try:
        return decoded.decode("utf-8")
    except UnicodeDecodeError:
        pass

    detected = chardet.detect(decoded)
    encoding = detected.get("encoding") if detected else None
    if encoding:
        try:
            return decoded.decode(encoding, errors="replace")
        except LookupError:
            pass
    return decoded.decode("latin-1", errors="replace")


def _decode_header_value(value: str) -> str:
    """Decode RFC 2047 encoded words (e.g. =?UTF-8?B?...?=)."""
    decoded_value = ""
    for part, encoding in decode_header(value):
        if isinstance(part, bytes):
            try:
                decoded_value += part.decode(encoding or "utf-8", errors="replace")
            except LookupError:
                decoded_value += part.decode("latin-1", errors="replace")
        else:
            decoded_value += part
    return decoded_value


def _extract_headers(payload: Dict[str, Any]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for header in payload.get("headers", []):
        name = header.get("name")
        if name:
            headers[name] = _decode_header_value(header.get("value", ""))
    return headers


def _extract_body(payload: Optional[Dict[str, Any]], prefer_html: bool = True) -> str:
    """
    Extract email body content. With prefer_html, the first text/html part wins
    (promotional mail carries most of its content there), otherwise text/plain.

    Handles single part messages and nested multipart structures.
    """
    if not payload:
        return ""

    mime_type = payload.get("mimeType", "")
    data = (payload.get("body") or {}).get("data")

    # Single part message
    if data and not payload.get("parts"):
        if mime_type.startswith("text/html") or mime_type.startswith("text/plain"):
            content = _decode_part(data)
            if mime_type.startswith("text/plain"):
                content = html.unescape(content)
            return content
        return ""

    html_content: Optional[str] = None
    text_content: Optional[str] = None

    for part in payload.get("parts", []):
        part_mime = part.get("mimeType", "")

        if part_mime.startswith("multipart/"):
            nested_html = _extract_body(part, prefer_html=True)
            nested_text = _extract_body(part, prefer_html=False)
            if nested_html and not html_content and nested_html != nested_text:
                html_content = nested_html
            if nested_text and not text_content:
                text_content = nested_text
            continue

        part_data = (part.get("body") or {}).get("data")
        if not part_data:
            continue
        content = _decode_part(part_data)
        if part_mime.startswith("text/html") and not html_content:
            html_content = content
        elif part_mime.startswith("text/plain") and not text_content:
            text_content = html.unescape(content)

    if prefer_html and html_content:
        return html_content
    return text_content or html_content or ""


def _format_internal_date(internal_date: Optional[str]) -> Optional[str]:
    if not internal_date:
        return None
    try:
        timestamp_ms = int(internal_date)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()


def _parse_sent_at(date_header: Optional[str], internal_date: Optional[str]) -> Optional[str]:
    """Sent time as UTC ISO-8601: the Date header if parseable, else internalDate."""
    if date_header:
        try:
            dt = parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            dt = None
        if dt is not None:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc).isoformat()
    return _format_internal_date(internal_date)


def _api_error(exc: HttpError, action: str) -> ExternalApiError:
    status = getattr(exc.resp, "status", None)
    if status == 429:
        retry_after = exc.resp.get("retry-after") if hasattr(exc.resp, "get") else None
        try:
            retry_seconds = float(retry_after) if retry_after else None
        except ValueError:
            retry_seconds = None
        return RateLimitExceededError("Gmail", retry_seconds)
    return ExternalApiError.gmail_api_failed(f"{action} failed ({status}): {exc}")


class GmailMessageFetcher:
    """
    Gmail API access for one or more email accounts.

    Services are built lazily per account and cached until `close()`.
    Refreshed access tokens are written back to the account row.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        scopes: List[str],
        service_factory: Callable[..., Any] = build,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = scopes
        self._service_factory = service_factory
        self._services: Dict[int, Any] = {}

    def _build_credentials(self, account: Dict[str, Any]) -> Credentials:
        creds = Credentials(
            token=account.get("access_token"),
            refresh_token=account.get("refresh_token"),
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.scopes,
        )
        expiry = account.get("token_expiry")
        if expiry:
            try:
                # google-auth compares expiry against a naive UTC datetime
                expiry_dt = datetime.fromisoformat(expiry.replace("Z", "+00:00"))
                if expiry_dt.tzinfo is not None:
                    expiry_dt = expiry_dt.astimezone(timezone.utc).replace(tzinfo=None)
                creds.expiry = expiry_dt
            except ValueError:
                logger.warning(f"Ignoring unparseable token expiry for account {account.get('id')}")
        return creds

    def _ensure_fresh_credentials(self, account: Dict[str, Any]) -> Credentials:
        """Refresh an expired access token and persist the new one."""
        creds = self._build_credentials(account)
        if creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except RefreshError as exc:
                raise ExternalApiError.gmail_api_failed(f"token refresh failed: {exc}") from exc
            update_account_tokens(
                account_id=account["id"],
                access_token=creds.token or "",
                refresh_token=creds.refresh_token,
                token_expiry=creds.expiry.isoformat() if creds.expiry else None,
            )
            logger.info(f"Refreshed Gmail access token for account {account['id']}")
        return creds

    def _service(self, account: Dict[str, Any]):
        service = self._services.get(account["id"])
        if service is None:
            creds = self._ensure_fresh_credentials(account)
            service = self._service_factory("gmail", "v1", credentials=creds, cache_discovery=False)
            self._services[account["id"]] = service
        return service

    def list_messages(
        self,
        account: Dict[str, Any],
        category: str = "promotions",
        max_results: int = 50,
        newer_than: str = "90d",
    ) -> List[str]:
        """List message ids in a Gmail category, newest first."""
        gmail = self._service(account)
        query = f"category:{category} newer_than:{newer_than}"
        try:
            response = gmail.users().messages().list(
                userId="me", maxResults=max_results, q=query
            ).execute()
        except HttpError as exc:
            raise _api_error(exc, "messages.list") from exc
        message_ids = [msg["id"] for msg in response.get("messages", []) if msg.get("id")]
        logger.info(f"Listed {len(message_ids)} messages for account {account['id']} ({query})")
        return message_ids

    def get_message(self, account: Dict[str, Any], message_id: str) -> Optional[GmailMessage]:
        """Fetch and decode one message. A message Gmail no longer has returns None."""
        gmail = self._service(account)
        try:
            msg = gmail.users().messages().get(userId="me", id=message_id, format="full").execute()
        except HttpError as exc:
            if getattr(exc.resp, "status", None) == 404:
                logger.warning(f"Message {message_id} no longer exists in Gmail")
                return None
            raise _api_error(exc, "messages.get") from exc

        payload = msg.get("payload", {})
        headers = _extract_headers(payload)
        return GmailMessage(
            id=message_id,
            subject=headers.get("Subject", ""),
            sender=headers.get("From", ""),
            recipient=headers.get("To", ""),
            sent_at=_parse_sent_at(headers.get("Date"), msg.get("internalDate")),
            snippet=html.unescape(msg.get("snippet") or ""),
            body=_extract_body(payload, prefer_html=True),
            size=msg.get("sizeEstimate"),
        )

    def trash_messages(self, account: Dict[str, Any], message_ids: List[str]) -> int:
        """Move messages to the Gmail trash using batch requests. Returns how many succeeded."""
        if not message_ids:
            return 0
        gmail = self._service(account)
        trashed = 0

        for i in range(0, len(message_ids), TRASH_BATCH_SIZE):
            batch_ids = message_ids[i:i + TRASH_BATCH_SIZE]
            failures: List[str] = []

            def batch_callback(request_id: str, response: Any, exception: Optional[Exception]) -> None:
                if exception:
                    logger.error(f"Failed to trash message {request_id}: {exception}")
                    failures.append(request_id)

            batch_request = gmail.new_batch_http_request()
            for msg_id in batch_ids:
                batch_request.add(
                    gmail.users().messages().trash(userId="me", id=msg_id),
                    callback=batch_callback,
                    request_id=msg_id,
                )
            try:
                batch_request.execute()
            except HttpError as exc:
                raise _api_error(exc, "messages.trash batch") from exc
            trashed += len(batch_ids) - len(failures)

        logger.info(f"Trashed {trashed}/{len(message_ids)} messages for account {account['id']}")
        return trashed

    def close(self) -> None:
        for service in self._services.values():
            close = getattr(service, "close", None)
            if callable(close):
                close()
        self._services.clear()
