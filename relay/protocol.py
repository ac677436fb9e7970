"""
probeshell Protocol Definitions (Shared)
Message schemas for agent <-> relay <-> observer communication.

All messages are JSON objects with a "type" field.
Used by both the relay and the agent.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Agent -> Relay (TCP)
DEVICE_INFO = "device_info"
LOG = "log"

# Relay -> Agent (TCP), Observer -> Relay (WebSocket)
EXECUTE_CODE = "execute_code"

# Observer -> Relay (WebSocket)
SELECT_DEVICE = "select_device"

# Relay -> Observer (WebSocket)
DEVICE_LIST_UPDATED = "device_list_updated"

DEVICE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

# Example messages:

# Agent -> Relay (announcement, repeated on every heartbeat)
# {
#   "type": "device_info",
#   "data": {"id": "3f1c...", "deviceName": "lab-ubuntu", "operatingSystem": "Linux-6.1", ...}
# }

# Agent -> Relay (log record)
# {
#   "type": "log",
#   "data": {"type": "Warning", "message": "low memory", "stackTrace": "", "timestamp": "..."}
# }

# Relay -> Agent (command)
# {
#   "type": "execute_code",
#   "data": {"code": "return 1+1"}
# }

# Relay -> Observer
# {"type": "device_list_updated", "devices": [{"id": "3f1c...", ...}]}
# {"type": "log", "deviceId": "3f1c...", "data": {...}}


def format_log_timestamp(when: Optional[datetime] = None) -> str:
    """Millisecond timestamp used on log records."""
    when = when or datetime.now()
    return when.strftime(LOG_TIMESTAMP_FORMAT)[:-3]


def device_info_message(info: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": DEVICE_INFO, "data": info}


def log_message(log_type: str, message: str, stack_trace: str = "",
                timestamp: Optional[str] = None) -> Dict[str, Any]:
    return {
        "type": LOG,
        "data": {
            "type": log_type,
            "message": message,
            "stackTrace": stack_trace,
            "timestamp": timestamp or format_log_timestamp(),
        },
    }


def execute_code_message(code: str) -> Dict[str, Any]:
    return {"type": EXECUTE_CODE, "data": {"code": code}}


def device_list_message(devices: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": DEVICE_LIST_UPDATED, "devices": devices}


def observer_log_message(device_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": LOG, "deviceId": device_id, "data": data}


def normalize_log_data(data: Dict[str, Any]) -> Dict[str, str]:
    """
    Coerce an agent's log payload to the shape observers expect.

    Missing fields get defaults; every value becomes a string.
    """
    def text(key: str, default: str) -> str:
        value = data.get(key)
        return str(value) if value else default

    return {
        "type": text("type", "Log"),
        "message": text("message", ""),
        "stackTrace": text("stackTrace", ""),
        "timestamp": text("timestamp", datetime.now().isoformat()),
    }


def dumps(msg: Dict[str, Any]) -> str:
    return json.dumps(msg, separators=(',', ':'), ensure_ascii=False)


def parse_frame(frame: bytes) -> Optional[Dict[str, Any]]:
    """
    Decode one frame into a message.

    Malformed frames are logged and dropped (returns None).
    """
    try:
        message = json.loads(frame.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Failed to parse message: %r", frame[:200])
        return None
    if not isinstance(message, dict):
        logger.warning("Ignoring non-object message: %r", frame[:200])
        return None
    return message
