from __future__ import annotations
import json
import logging
from typing import Awaitable, Callable, Sequence
from nats.aio.client import Client as NATS
from .config import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()
_nats = NATS()

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers, allow_reconnect=True, max_reconnect_attempts=5)

async def nats_close():
    try:
        if _nats.is_connected:
            await _nats.drain()
    except Exception:
        logger.warning("NATS drain failed", exc_info=True)

async def publish_event(evt: dict):
    """
    evt = {
      "filter": {"roles": [...] | None, "attendee_id": str | None},
      "payload": {"event": "attendee-checked-in", ...}
    }
    """
    await nats_connect()
    await _nats.publish(_settings.nats_subject_events, json.dumps(evt, default=str).encode("utf-8"))

async def subscribe_events(cb: Callable[[dict], Awaitable[None]]):
    await nats_connect()
    async def handler(msg):
        try:
            data = json.loads(msg.data)
        except ValueError:
            logger.warning("dropping malformed event on %s", msg.subject)
            return
        await cb(data)
    await _nats.subscribe(_settings.nats_subject_events, cb=handler)
