"""LLM Provider base class with shared retry logic."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

import httpx

from ..types import LLMProviderError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF = [1.0, 2.0, 4.0]


def post_with_retry(
    url: str,
    headers: dict,
    payload: dict,
    provider: str,
    timeout: float = 60.0,
    error_cls: type[LLMProviderError] = LLMProviderError,
) -> dict:
    """POST JSON, retrying 429/5xx and transport errors with backoff.

    Other non-200 statuses raise immediately. Returns the decoded body.
    """
    last_error: LLMProviderError | None = None

    for attempt in range(MAX_RETRIES):
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, headers=headers, json=payload)

            if response.status_code == 200:
                return response.json()

            if response.status_code == 429 or response.status_code >= 500:
                last_error = error_cls(
                    f"HTTP {response.status_code}: {response.text}",
                    provider=provider,
                    status_code=response.status_code,
                )
                logger.debug("%s attempt %d failed: HTTP %d", provider, attempt + 1, response.status_code)
                if attempt < MAX_RETRIES - 1:
                    time.sleep(RETRY_BACKOFF[attempt])
                continue

            raise error_cls(
                f"HTTP {response.status_code}: {response.text}",
                provider=provider,
                status_code=response.status_code,
            )

        except httpx.HTTPError as e:
            last_error = error_cls(f"HTTP error: {e}", provider=provider)
            logger.debug("%s attempt %d failed: %s", provider, attempt + 1, e)
            if attempt < MAX_RETRIES - 1:
                time.sleep(RETRY_BACKOFF[attempt])
            continue

    raise last_error or error_cls("Max retries exceeded", provider=provider)


class BaseProvider(ABC):
    """Abstract base for LLM providers. Subclasses override hook methods;
    the retry loop in ``complete()`` is shared."""

    _timeout: float = 60.0

    def __init__(self) -> None:
        self.last_usage: dict = {}

    # -- hook methods subclasses must implement --

    @abstractmethod
    def _provider_name(self) -> str: ...

    @abstractmethod
    def _get_url(self) -> str: ...

    @abstractmethod
    def _get_headers(self) -> dict: ...

    @abstractmethod
    def _build_payload(self, system: str, user: str, max_tokens: int) -> dict: ...

    @abstractmethod
    def _extract_text(self, data: dict) -> str: ...

    def complete(self, system: str, user: str, max_tokens: int) -> str:
        """Send a completion request with automatic retry on transient errors."""
        data = post_with_retry(
            self._get_url(),
            self._get_headers(),
            self._build_payload(system, user, max_tokens),
            provider=self._provider_name(),
            timeout=self._timeout,
        )
        self.last_usage = data.get("usage", {})
        return self._extract_text(data)
