"""
Notificaciones de cambios en tiempo real.

Feed ligero por tabla: los eventos no llevan datos personales, solo
{"table", "event", "id", "user_id", "status"}; el cliente vuelve a pedir
el detalle por REST al recibirlos.

Los servicios corren en el threadpool de FastAPI, por eso publish()
entrega a cada suscriptor con call_soon_threadsafe sobre su propio loop.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Subscription:
    channel: str
    user_id: str | None  # None = recibe todo (admin)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    loop: asyncio.AbstractEventLoop | None = None

    def wants(self, event: dict[str, Any]) -> bool:
        return self.user_id is None or event.get("user_id") == self.user_id


class ChangeBroker:
    def __init__(self) -> None:
        self._subs: dict[str, set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, channel: str, user_id: str | None = None) -> Subscription:
        """Se llama desde una corrutina: la suscripción queda atada al loop en curso."""
        sub = Subscription(channel=channel, user_id=user_id, loop=asyncio.get_running_loop())
        with self._lock:
            self._subs.setdefault(channel, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            self._subs.get(sub.channel, set()).discard(sub)

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subs.get(channel, ()))

    def publish(self, channel: str, event: str, record_id: str, user_id: str | None = None, **extra: Any) -> int:
        payload = {"table": channel, "event": event, "id": record_id, "user_id": user_id, **extra}
        with self._lock:
            targets = [sub for sub in self._subs.get(channel, ()) if sub.wants(payload)]

        delivered = 0
        for sub in targets:
            if sub.loop is None or sub.loop.is_closed():
                self.unsubscribe(sub)
                continue
            sub.loop.call_soon_threadsafe(sub.queue.put_nowait, payload)
            delivered += 1
        logger.debug("Evento %s/%s entregado a %d suscriptores", channel, event, delivered)
        return delivered


broker = ChangeBroker()
