"""Deposit and withdrawal event delivery.

Events go to an optional in-process sink (the `watch` command writes them
to stdout as JSONL) and to an optional webhook, HMAC-signed when a secret
is configured. Delivery problems are logged and never abort crediting.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
from loguru import logger

from chainwatch.config import NotifyConfig

WEBHOOK_SCHEMA_VERSION = "1"

EventSink = Callable[[dict[str, Any]], None]


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that keeps Decimal amounts exact (as strings)."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        return super().default(obj)


def emit_event(event: dict[str, Any]) -> None:
    """
    Write a single JSONL event to stdout and flush.

    Never use print(); buffered output breaks pipe consumers.
    """
    sys.stdout.write(json.dumps(event, cls=DecimalEncoder) + "\n")
    sys.stdout.flush()


def now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class Notifier:
    """Fans an event out to the sink and the webhook."""

    def __init__(
        self,
        config: NotifyConfig | None = None,
        sink: EventSink | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or NotifyConfig()
        self.sink = sink
        self._http_client = http_client

    async def publish(self, event_type: str, payload: dict[str, Any]) -> int | None:
        """
        Deliver one event. Returns the webhook HTTP status, or None when no
        webhook is configured or delivery failed.
        """
        event = {"type": event_type, "timestamp": now_iso(), **payload}
        if self.sink is not None:
            try:
                self.sink(event)
            except (OSError, ValueError) as e:
                logger.warning(f"Event sink failed for {event_type}: {e}")

        if not self.config.webhook_url:
            return None
        return await self.dispatch_webhook(event)

    async def dispatch_webhook(self, event: dict[str, Any]) -> int | None:
        """
        Send event payload to webhook URL via HTTP POST.

        Returns HTTP status code, or None if delivery failed.
        """
        body = json.dumps(build_webhook_payload(event), cls=DecimalEncoder).encode()
        headers: dict[str, str] = {"Content-Type": "application/json"}

        # HMAC signature if secret configured
        if self.config.webhook_secret:
            sig = hmac.new(
                self.config.webhook_secret.encode(),
                body,
                hashlib.sha256,
            ).hexdigest()
            headers["X-Chainwatch-Signature"] = f"sha256={sig}"

        try:
            if self._http_client is not None:
                resp = await self._http_client.post(
                    self.config.webhook_url, content=body, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=15.0) as client:
                    resp = await client.post(
                        self.config.webhook_url, content=body, headers=headers
                    )
        except httpx.TimeoutException:
            logger.warning(f"Webhook timeout delivering {event.get('type')}")
            return None
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Webhook delivery failed for {event.get('type')}: {e}")
            return None

        if not 200 <= resp.status_code < 300:
            logger.warning(f"Webhook returned {resp.status_code} for {event.get('type')}")
        return resp.status_code


def build_webhook_payload(event: dict[str, Any]) -> dict[str, Any]:
    """Wrap an event in the versioned webhook envelope."""
    data = {k: v for k, v in event.items() if k not in ("type", "timestamp")}
    return {
        "schema_version": WEBHOOK_SCHEMA_VERSION,
        "event_type": event.get("type", ""),
        "emitted_at": event.get("timestamp", ""),
        "data": data,
    }
