"""
Socket.IO settlement feed.

The back end pushes a ``settlement:update`` event when a payment webhook
(card processor, bridge fulfilment) settles a transaction. The feed is only
a wake-up signal for the settlement monitor; confirmation is still verified
against the ledger.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

import socketio

from storefront_checkout.models.settlement import SettlementNotice
from storefront_checkout.transport.envelope import parse_settlement_notice

SOCKETIO_PATH = "/socket.io/"
SETTLEMENT_EVENT = "settlement:update"

logger = logging.getLogger(__name__)


class SettlementFeed:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        transports: Optional[list[str]] = None,
        connect_timeout: float = 15.0,
    ):
        self._base_url = base_url
        self._token = token
        self._transports = transports or ["websocket"]
        self._connect_timeout = connect_timeout
        self._sio: Optional[socketio.AsyncClient] = None
        self._listeners: list[Callable[[SettlementNotice], None]] = []
        self._waiters: dict[str, list[asyncio.Future]] = {}

    @property
    def connected(self) -> bool:
        return self._sio is not None and self._sio.connected

    def add_listener(self, listener: Callable[[SettlementNotice], None]) -> Callable[[], None]:
        """Add a notice listener. Returns a cleanup function."""
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass
        return remove

    async def connect(self) -> None:
        if self.connected:
            return
        self._sio = socketio.AsyncClient()

        @self._sio.on(SETTLEMENT_EVENT)
        async def on_settlement(data: Any) -> None:
            notice = parse_settlement_notice(data)
            if notice is None:
                logger.warning("Ignoring malformed %s event", SETTLEMENT_EVENT)
                return
            self.publish(notice)

        @self._sio.event
        async def disconnect(_reason: str = "") -> None:
            logger.info("Settlement feed disconnected")

        await self._sio.connect(
            self._base_url,
            auth={"token": self._token} if self._token else None,
            transports=self._transports,
            socketio_path=SOCKETIO_PATH,
            wait_timeout=self._connect_timeout,
        )

    def publish(self, notice: SettlementNotice) -> None:
        """Deliver a notice to listeners and to anyone waiting on its reference."""
        logger.debug("Settlement notice for %s: %s", notice.reference, notice.status)
        for listener in list(self._listeners):
            listener(notice)
        for future in self._waiters.pop(notice.reference, []):
            if not future.done():
                future.set_result(notice)

    async def wait_for(self, reference: str, timeout: float) -> Optional[SettlementNotice]:
        """Wait up to ``timeout`` seconds for a notice about ``reference``."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(reference, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            waiters = self._waiters.get(reference)
            if waiters and future in waiters:
                waiters.remove(future)
                if not waiters:
                    del self._waiters[reference]

    async def disconnect(self) -> None:
        if self._sio:
            await self._sio.disconnect()
            self._sio = None
