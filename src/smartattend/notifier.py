"""
Webhook Notifier
================
Fire-and-forget delivery of application events to an automation endpoint
(n8n or anything accepting a JSON POST).

dispatch() only schedules the delivery; failures are logged and never reach
the caller.
"""

import aiohttp
import asyncio
import logging
from typing import Optional, Dict, Any, Set

from .database.models import isoformat_utc, utcnow

logger = logging.getLogger(__name__)

EVENT_SOURCE = "smartattend-api"


class WebhookNotifier:
    """
    Async webhook client with its own bounded timeout.
    """

    def __init__(self, url: Optional[str] = None, secret: Optional[str] = None, timeout: float = 5.0):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return bool(self.url)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    def dispatch(self, event: str, data: Dict[str, Any]) -> Optional[asyncio.Task]:
        """
        Schedule delivery of an event on the running loop and return at once.

        Returns the delivery task, or None when nothing was scheduled.
        """
        if not self.configured:
            logger.debug(f"[WEBHOOK] URL not configured, skipping {event}")
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"[WEBHOOK] No running event loop, dropping {event}")
            return None

        task = loop.create_task(self._deliver(event, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, event: str, data: Dict[str, Any]) -> bool:
        payload = {
            "event": event,
            "data": data,
            "timestamp": isoformat_utc(utcnow()),
            "source": EVENT_SOURCE,
        }
        headers = {"X-Webhook-Event": event}
        if self.secret:
            headers["X-Webhook-Secret"] = self.secret

        try:
            session = await self._get_session()
            async with session.post(self.url, json=payload, headers=headers) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    logger.error(f"[WEBHOOK] {event} failed: {response.status} - {error_text[:200]}")
                    return False
                logger.info(f"[WEBHOOK] {event} delivered")
                return True

        except asyncio.TimeoutError:
            logger.error(f"[WEBHOOK] {event} timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            logger.error(f"[WEBHOOK] {event} connection error: {e}")
        except Exception as e:
            logger.error(f"[WEBHOOK] {event} unexpected error: {e}", exc_info=True)
        return False

    async def drain(self):
        """Wait for every in-flight delivery to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self):
        """Drain pending deliveries and close the client session."""
        await self.drain()
        if self.session and not self.session.closed:
            await self.session.close()
