"""tuner.core.notifier

Best-effort Discord webhook posts.

Delivery semantics:
- one POST per message, no retries
- JSON body, so quotes/backslashes/newlines in the text are escaped by the encoder
- every failure is logged and swallowed; the sweep never waits on the operator channel
"""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "tuner-notifier/1"


def truncate(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[: max(max_chars - 1, 0)] + "…"


class Notifier:
    def __init__(
        self,
        webhook_url: str,
        *,
        timeout_s: float = 10.0,
        max_chars: int = 2000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.max_chars = int(max_chars)
        self._client = httpx.Client(
            timeout=timeout_s,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> Notifier:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def send(self, text: str) -> bool:
        """Post ``text``. Returns True on a 2xx response, False otherwise."""

        payload = {"content": truncate(text, self.max_chars)}
        try:
            resp = self._client.post(self.webhook_url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("notify_failed", extra={"status": e.response.status_code})
            return False
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("notify_failed", extra={"error": f"{type(e).__name__}: {e}"})
            return False
        return True
