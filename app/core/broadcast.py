"""
Connection registry for real-time notifications.

Routers and services never touch sockets directly; they call
``broadcast(ClientFilter, payload)`` on an injected registry. The local
registry delivers to sockets held by this process. The NATS registry
publishes the (serializable) filter and payload so that every instance
delivers to its own local clients.
"""
from __future__ import annotations
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Protocol

from .config import get_settings
from .nats import publish_event, subscribe_events

logger = logging.getLogger(__name__)

STAFF_ROLES = frozenset({"admin", "manager", "staff"})

ATTENDEE_CHECKED_IN = "attendee-checked-in"
RESOURCE_CLAIMED = "resource-claimed"

class Socket(Protocol):
    async def send_json(self, data: Any) -> None: ...

@dataclass
class Client:
    client_id: str  # one per connection; a user may hold several
    socket: Socket
    user_id: str
    role: str
    attendee_ids: set[str] = field(default_factory=set)

@dataclass(frozen=True)
class ClientFilter:
    """Matches clients by role, or by subscription to one attendee."""
    roles: frozenset[str] | None = None
    attendee_id: str | None = None

    def __call__(self, client: Client) -> bool:
        if self.roles is not None and client.role in self.roles:
            return True
        return self.attendee_id is not None and self.attendee_id in client.attendee_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roles": sorted(self.roles) if self.roles is not None else None,
            "attendee_id": self.attendee_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientFilter":
        roles = data.get("roles")
        return cls(roles=frozenset(roles) if roles is not None else None, attendee_id=data.get("attendee_id"))

def attendee_event_filter(attendee_id: str) -> ClientFilter:
    return ClientFilter(roles=STAFF_ROLES, attendee_id=attendee_id)

class ConnectionRegistry(Protocol):
    async def register_client(self, socket: Socket, user_id: str, role: str) -> str: ...
    async def unregister_client(self, client_id: str) -> None: ...
    async def subscribe(self, client_id: str, attendee_id: str) -> bool: ...
    async def broadcast(self, flt: ClientFilter, payload: Dict[str, Any]) -> None: ...

class LocalConnectionRegistry:
    def __init__(self) -> None:
        self._clients: Dict[str, Client] = {}
        self._lock = asyncio.Lock()

    async def register_client(self, socket: Socket, user_id: str, role: str) -> str:
        client_id = uuid.uuid4().hex
        async with self._lock:
            self._clients[client_id] = Client(client_id=client_id, socket=socket, user_id=user_id, role=role)
        return client_id

    async def unregister_client(self, client_id: str) -> None:
        async with self._lock:
            self._clients.pop(client_id, None)

    async def subscribe(self, client_id: str, attendee_id: str) -> bool:
        async with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                return False
            # attendees may only follow themselves
            if client.role not in STAFF_ROLES and client.user_id != attendee_id:
                return False
            client.attendee_ids.add(attendee_id)
            return True

    def clients(self) -> Iterable[Client]:
        return list(self._clients.values())

    async def deliver(self, flt: ClientFilter, payload: Dict[str, Any]) -> int:
        sent = 0
        for client in self.clients():
            if not flt(client):
                continue
            try:
                await client.socket.send_json(payload)
                sent += 1
            except Exception:
                logger.info("dropping unreachable client %s", client.client_id)
                await self.unregister_client(client.client_id)
        return sent

    async def broadcast(self, flt: ClientFilter, payload: Dict[str, Any]) -> None:
        await self.deliver(flt, payload)

class NatsConnectionRegistry(LocalConnectionRegistry):
    """Fans out through NATS; each instance delivers to its own sockets."""

    async def start(self) -> None:
        async def on_event(evt: dict):
            try:
                flt = ClientFilter.from_dict(evt.get("filter") or {})
                payload = evt["payload"]
            except (KeyError, TypeError):
                logger.warning("dropping malformed broadcast event")
                return
            await self.deliver(flt, payload)
        await subscribe_events(on_event)

    async def broadcast(self, flt: ClientFilter, payload: Dict[str, Any]) -> None:
        await publish_event({"filter": flt.to_dict(), "payload": payload})

_registry: ConnectionRegistry | None = None
def get_registry() -> ConnectionRegistry:
    global _registry
    if _registry is None:
        if get_settings().use_nats_for_events:
            _registry = NatsConnectionRegistry()
        else:
            _registry = LocalConnectionRegistry()
    return _registry

async def notify(registry: ConnectionRegistry, attendee_id: str, payload: Dict[str, Any]) -> None:
    """Best-effort push; a broker outage never fails the write that triggered it."""
    try:
        await registry.broadcast(attendee_event_filter(attendee_id), payload)
    except Exception:
        logger.warning("broadcast of %s failed", payload.get("event"), exc_info=True)
