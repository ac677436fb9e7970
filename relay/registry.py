"""
probeshell Device Registry (Relay Side)
Live agents keyed by device id.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Protocol

logger = logging.getLogger(__name__)


class AgentLink(Protocol):
    """What the registry needs from an agent's TCP session."""

    @property
    def connected(self) -> bool: ...

    def send(self, msg: Dict[str, Any]) -> None: ...


@dataclass
class Device:
    id: str
    info: Dict[str, Any]
    session: AgentLink

    def describe(self) -> Dict[str, Any]:
        return {"id": self.id, **{k: v for k, v in self.info.items() if k != "id"}}


class DeviceRegistry:
    def __init__(self):
        self._devices: Dict[str, Device] = {}

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __iter__(self) -> Iterator[Device]:
        return iter(list(self._devices.values()))

    def get(self, device_id: Optional[str]) -> Optional[Device]:
        if device_id is None:
            return None
        return self._devices.get(device_id)

    def register(self, info: Dict[str, Any], session: AgentLink) -> Device:
        """Insert or refresh a device from its device_info payload."""
        device_id = str(info.get("id") or f"device-{int(time.time() * 1000)}")
        device = self._devices.get(device_id)
        if device is None:
            device = Device(id=device_id, info=dict(info), session=session)
            self._devices[device_id] = device
            logger.info("Device registered: %s", device_id)
        else:
            device.info = dict(info)
            device.session = session
        return device

    def remove(self, device_id: str, session: Optional[AgentLink] = None) -> bool:
        """
        Remove a device whose session closed.

        When session is given, only remove if it is still the device's
        current session.
        """
        device = self._devices.get(device_id)
        if device is None:
            return False
        if session is not None and device.session is not session:
            return False
        del self._devices[device_id]
        logger.info("Device disconnected: %s", device_id)
        return True

    def snapshot(self) -> List[Dict[str, Any]]:
        return [device.describe() for device in self._devices.values()]
