"""
probeshell Observer Gateway (Relay Side)
One message session per connected observer (browser/controller).

Inbound:  select_device {deviceId}, execute_code {code}
Outbound: device_list_updated {devices}, log {deviceId, data}
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

from . import protocol
from .registry import DeviceRegistry

if TYPE_CHECKING:
    from .router import MessageRouter

logger = logging.getLogger(__name__)


class ObserverTransport(Protocol):
    async def send_text(self, data: str) -> None: ...


@dataclass
class ObserverSession:
    transport: ObserverTransport
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    current_device: Optional[str] = None


class ObserverGateway:
    def __init__(self, registry: DeviceRegistry):
        self.registry = registry
        self.router: Optional["MessageRouter"] = None
        self._sessions: Dict[str, ObserverSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def sessions(self) -> List[ObserverSession]:
        return list(self._sessions.values())

    async def connect(self, transport: ObserverTransport) -> ObserverSession:
        """Register a new observer and send it the current device list."""
        session = ObserverSession(transport)
        self._sessions[session.id] = session
        logger.info("Observer connected: %s", session.id)
        await self.send(session, protocol.device_list_message(self.registry.snapshot()))
        return session

    def disconnect(self, session: ObserverSession) -> None:
        if self._sessions.pop(session.id, None) is not None:
            logger.info("Observer disconnected: %s", session.id)

    async def receive(self, session: ObserverSession, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Observer %s sent invalid JSON", session.id)
            return
        if not isinstance(data, dict):
            logger.warning("Observer %s sent a non-object message", session.id)
            return

        msg_type = data.get("type")
        if msg_type == protocol.SELECT_DEVICE:
            session.current_device = data.get("deviceId")
            logger.info("Observer %s selected device %s", session.id, session.current_device)
        elif msg_type == protocol.EXECUTE_CODE:
            if self.router is not None:
                self.router.route_execute(session, str(data.get("code") or ""))
        else:
            logger.debug("Observer %s sent unknown message type: %s", session.id, msg_type)

    async def send(self, session: ObserverSession, msg: Dict[str, Any]) -> bool:
        try:
            await session.transport.send_text(protocol.dumps(msg))
        except Exception as e:
            logger.error("Error sending to observer %s: %s", session.id, e)
            return False
        return True

    async def broadcast_device_list(self) -> None:
        msg = protocol.device_list_message(self.registry.snapshot())
        for session in self.sessions():
            await self.send(session, msg)

    async def send_log(self, device_id: str, data: Dict[str, Any]) -> int:
        """Send a log to every observer watching device_id; returns how many got it."""
        msg = protocol.observer_log_message(device_id, data)
        delivered = 0
        for session in self.sessions():
            if session.current_device == device_id and await self.send(session, msg):
                delivered += 1
        return delivered
