"""
OpenAI Assistants client for promo and package extraction.

Each email is sent as a single user message to a pre-configured assistant
(one tuned for promotions, one for order tracking). The run is polled until
it completes, and the assistant's JSON answer is validated into a pydantic model.
"""
from __future__ import annotations

import logging
import re
import time
from datetime import date
from typing import Any, Optional, Type, TypeVar

from openai import APIError, APIStatusError, OpenAI, RateLimitError
from pydantic import BaseModel, ValidationError

from cleanbox.errors import ExternalApiError, RateLimitExceededError
from cleanbox.models import PackageDetails, PromoDetails

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Run states that will never reach "completed"
TERMINAL_FAILURE_STATES = {"failed", "cancelled", "expired"}

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?|\n?```\s*$")


def format_user_message(subject: str, sender: str, body: str, today: Optional[date] = None) -> str:
    """Build the prompt. The current date lets the assistant resolve "ends Sunday" style expiries."""
    today = today or date.today()
    return (
        f"CURRENT DATE: {today.strftime('%B')} {today.day}, {today.year}\n"
        f"CURRENT YEAR: {today.year}\n"
        "\n"
        f"Subject: {subject}\n"
        f"Sender: {sender}\n"
        "\n"
        "Body:\n"
        f"{body}"
    ).strip()


def strip_code_fence(content: str) -> str:
    """Remove a surrounding ```json ... ``` markdown fence, if present."""
    return _FENCE_RE.sub("", content.strip())


def _retry_after(exc: APIStatusError) -> Optional[float]:
    response = getattr(exc, "response", None)
    raw = response.headers.get("retry-after") if response is not None else None
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class ExtractionClient:
    """
    Thin wrapper around the OpenAI Assistants API.

    Failures of the API itself raise ExternalApiError (RateLimitExceededError
    for HTTP 429). An answer that is not valid JSON, or does not match the
    expected shape, is logged and returned as None.
    """

    def __init__(
        self,
        client: OpenAI,
        promo_assistant_id: str,
        package_assistant_id: str,
        timeout: float = 30.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.client = client
        self.promo_assistant_id = promo_assistant_id
        self.package_assistant_id = package_assistant_id
        self.timeout = timeout
        self.poll_interval = poll_interval

    @classmethod
    def from_config(cls, config: Any) -> "ExtractionClient":
        return cls(
            client=OpenAI(api_key=config["OPENAI_API_KEY"]),
            promo_assistant_id=config["OPENAI_ASSISTANT_ID"],
            package_assistant_id=config["OPENAI_PACKAGE_ASSISTANT_ID"],
            timeout=config["EXTRACTION_TIMEOUT"],
            poll_interval=config["EXTRACTION_POLL_INTERVAL"],
        )

    def extract_promo_details(self, subject: str, sender: str, body: str) -> Optional[PromoDetails]:
        if not self.promo_assistant_id:
            raise ExternalApiError.openai_api_failed("OPENAI_ASSISTANT_ID is not configured")
        content = self._run_assistant(self.promo_assistant_id, subject, sender, body)
        return self._parse(content, PromoDetails)

    def extract_package_details(self, subject: str, sender: str, body: str) -> Optional[PackageDetails]:
        if not self.package_assistant_id:
            raise ExternalApiError.openai_api_failed("OPENAI_PACKAGE_ASSISTANT_ID is not configured")
        content = self._run_assistant(self.package_assistant_id, subject, sender, body)
        return self._parse(content, PackageDetails)

    def _run_assistant(self, assistant_id: str, subject: str, sender: str, body: str) -> Optional[str]:
        """Run the assistant on one email and return its raw text answer."""
        try:
            run = self.client.beta.threads.create_and_run(
                assistant_id=assistant_id,
                thread={
                    "messages": [
                        {"role": "user", "content": format_user_message(subject, sender, body)}
                    ]
                },
            )
            thread_id = run.thread_id
            if not thread_id:
                raise ExternalApiError.openai_api_failed("Failed to create thread")
            logger.debug(f"Assistant run {run.id} created on thread {thread_id}")

            started = time.monotonic()
            run = self.client.beta.threads.runs.retrieve(run.id, thread_id=thread_id)
            while run.status != "completed":
                if run.status in TERMINAL_FAILURE_STATES:
                    last_error = getattr(run, "last_error", None)
                    detail = f"{last_error.code}: {last_error.message}" if last_error else run.status
                    logger.error(f"Assistant run {run.id} ended with status {run.status}: {detail}")
                    raise ExternalApiError.openai_api_failed(
                        f"Assistant run failed with status: {run.status}. Error: {detail}"
                    )
                if time.monotonic() - started >= self.timeout:
                    logger.error(f"Assistant run {run.id} timed out after {self.timeout}s")
                    raise ExternalApiError.openai_timeout()
                time.sleep(self.poll_interval)
                run = self.client.beta.threads.runs.retrieve(run.id, thread_id=thread_id)

            messages = self.client.beta.threads.messages.list(thread_id=thread_id)
        except ExternalApiError:
            raise
        except RateLimitError as exc:
            raise RateLimitExceededError("OpenAI", _retry_after(exc)) from exc
        except APIError as exc:
            raise ExternalApiError.openai_api_failed(exc.message or "Unknown error") from exc

        # Messages are listed newest first
        answer = next((m for m in messages.data if m.role == "assistant"), None)
        if answer is None or not answer.content or answer.content[0].type != "text":
            return None
        return answer.content[0].text.value

    def _parse(self, content: Optional[str], model: Type[ModelT]) -> Optional[ModelT]:
        if not content:
            return None
        try:
            return model.model_validate_json(strip_code_fence(content))
        except ValidationError as exc:
            logger.warning(f"Discarding malformed {model.__name__} answer: {exc.error_count()} error(s)")
            logger.debug(f"Raw assistant answer: {content[:500]}")
            return None
