"""
probeshell Message Router (Relay Side)

- agent log -> every observer that selected that agent
- observer execute_code -> the observer's selected agent
- device_info / disconnect -> registry update + device list broadcast
"""

import logging
from typing import Any, Dict, Optional, Protocol, Set

from . import protocol
from .gateway import ObserverGateway, ObserverSession
from .registry import AgentLink, DeviceRegistry

logger = logging.getLogger(__name__)


class AgentEndpoint(AgentLink, Protocol):
    id: str
    device_id: Optional[str]
    device_ids: Set[str]


class MessageRouter:
    def __init__(self, registry: DeviceRegistry, gateway: ObserverGateway):
        self.registry = registry
        self.gateway = gateway
        gateway.router = self

    async def handle_agent_message(self, session: AgentEndpoint, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        data = message.get("data")

        if msg_type == protocol.DEVICE_INFO:
            if not isinstance(data, dict):
                logger.warning("device_info without data from %s", session.id)
                return
            device = self.registry.register(data, session)
            session.device_id = device.id
            session.device_ids.add(device.id)
            await self.gateway.broadcast_device_list()

        elif msg_type == protocol.LOG:
            if not isinstance(data, dict) or session.device_id is None:
                return
            await self.gateway.send_log(session.device_id, protocol.normalize_log_data(data))

        else:
            logger.info("Unknown message type from %s: %s", session.id, msg_type)

    async def agent_disconnected(self, session: AgentEndpoint) -> None:
        removed = [device_id for device_id in sorted(session.device_ids)
                   if self.registry.remove(device_id, session)]
        if removed:
            await self.gateway.broadcast_device_list()

    def route_execute(self, observer: ObserverSession, code: str) -> bool:
        """Forward code to the observer's selected agent; silently dropped if there is none."""
        device = self.registry.get(observer.current_device)
        if device is None or not device.session.connected:
            logger.debug("No connected device %s for observer %s, dropping execute_code",
                         observer.current_device, observer.id)
            return False
        device.session.send(protocol.execute_code_message(code))
        return True
