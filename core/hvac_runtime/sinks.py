"""
Downstream Sinks

HTTP clients for the two downstream consumers. Both are synchronous
(requests) and are driven from a Dispatcher thread, which owns retries.
"""

import logging
from typing import Any

import requests

from .exceptions import SinkDeliveryFailure

logger = logging.getLogger(__name__)

INGEST_BATCH_PATH = "/ingest/v1/events:batch"


class HttpSink:
    """JSON POST client with connection pooling."""

    name = "http"

    def __init__(self, url: str | None, timeout: float = 10, headers: dict[str, str] | None = None):
        """Initialize sink.

        Args:
            url: Target URL. None or empty disables the sink.
            timeout: Request timeout in seconds
            headers: Extra headers (e.g. Authorization)
        """
        self.url = url or None
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if headers:
            self.session.headers.update(headers)
        self._warned_disabled = False

    @property
    def enabled(self) -> bool:
        return self.url is not None

    def _body(self, payload: dict[str, Any]) -> dict[str, Any]:
        return payload

    def post(self, payload: dict[str, Any]) -> bool:
        """POST one payload.

        Returns:
            True if delivered, False if the sink is disabled

        Raises:
            SinkDeliveryFailure: On transport errors or non-2xx responses
        """
        if not self.enabled:
            if not self._warned_disabled:
                logger.warning(f"{self.name} sink has no URL configured, posts are skipped")
                self._warned_disabled = True
            return False

        try:
            response = self.session.post(self.url, json=self._body(payload), timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise SinkDeliveryFailure(f"{self.name} rejected post [{e.response.status_code}]: {e}")
        except requests.exceptions.RequestException as e:
            raise SinkDeliveryFailure(f"{self.name} request failed: {e}")

        logger.debug(f"{self.name}: posted {response.status_code}")
        return True

    def close(self) -> None:
        self.session.close()


class StatusWebhookSink(HttpSink):
    """Dashboard status webhook (camelCase payloads)."""

    name = "status_webhook"


class CoreIngestSink(HttpSink):
    """Core ingest service. Single events are wrapped in a batch."""

    name = "core_ingest"

    def __init__(self, base_url: str | None, api_key: str | None = None, timeout: float = 10):
        url = f"{base_url.rstrip('/')}{INGEST_BATCH_PATH}" if base_url else None
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        if url and not api_key:
            logger.warning("CORE_API_KEY not set, posting to core ingest without authorization")
        super().__init__(url, timeout=timeout, headers=headers)

    def _body(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {"events": [payload]}
