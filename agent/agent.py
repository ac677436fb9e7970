#!/usr/bin/env python3
"""
probeshell Agent
Runs inside a host process and keeps a session with the relay.

Responsibilities:
- Connect to the relay, reconnect after a fixed delay on any failure
- Announce device metadata on connect and on every heartbeat
- Stream the host's log records to the relay as they happen
- Queue execute_code commands for the host's main turn
"""

import argparse
import enum
import logging
import os
import platform
import select
import socket
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from relay import framing, protocol

from . import digest
from .dispatcher import MainThreadDispatcher
from .executor import CodeExecutor, ExecutionContext
from .logsink import LogBuffer, LogRecord, RemoteLogHandler

logger = logging.getLogger(__name__)

RECV_SIZE = 4096


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class AgentConfig:
    host: str = "127.0.0.1"
    port: int = 8002
    connect_timeout: float = 5.0
    reconnect_delay: float = 5.0
    heartbeat_interval: float = 30.0
    poll_interval: float = 0.01
    rescan_interval: float = 5.0
    framing: str = framing.BRACE
    product_name: str = ""
    version: str = ""
    capture_level: int = logging.INFO


def _system_memory_mb() -> Optional[int]:
    try:
        return os.sysconf('SC_PAGE_SIZE') * os.sysconf('SC_PHYS_PAGES') // (1024 * 1024)
    except (AttributeError, ValueError, OSError):
        return None


def _peak_memory_mb() -> Optional[int]:
    if sys.platform == "win32":
        return None
    import resource
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # bytes on macOS, KiB elsewhere
    if sys.platform == "darwin":
        return peak // (1024 * 1024)
    return peak // 1024


class Agent:
    def __init__(self, config: Optional[AgentConfig] = None,
                 context: Optional[ExecutionContext] = None, *,
                 executor: Optional[CodeExecutor] = None,
                 dispatcher: Optional[MainThreadDispatcher] = None,
                 connector: Callable[..., socket.socket] = socket.create_connection,
                 sleep: Optional[Callable[[float], Any]] = None,
                 device_id: Optional[str] = None):
        self.config = config or AgentConfig()
        self.context = context if context is not None else ExecutionContext()
        self.executor = executor or CodeExecutor(self.context)
        self.dispatcher = dispatcher or MainThreadDispatcher()
        self.log_buffer = LogBuffer()
        self.device_id = device_id or digest.device_fingerprint()

        self._connector = connector
        self._sleep = sleep or self._interruptible_sleep
        self._sock: Optional[socket.socket] = None
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._connect_lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._stopped = threading.Event()
        self._wake = threading.Event()
        self._session_lost = False
        self._handler: Optional[RemoteLogHandler] = None
        self._threads: Dict[str, threading.Thread] = {}

    #
    # State
    #
    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _set_state(self, new_state: ConnectionState) -> None:
        with self._state_lock:
            old, self._state = self._state, new_state
        if old is not new_state:
            logger.debug("Connection state %s -> %s", old.value, new_state.value)

    def _interruptible_sleep(self, seconds: float) -> None:
        self._stopped.wait(seconds)

    #
    # Lifecycle
    #
    def start(self) -> None:
        """Install log capture and start the supervisor and heartbeat threads."""
        if "supervisor" in self._threads:
            return
        self._stopped.clear()
        self._install_log_capture()
        self.context.rescan()
        for name, target in (("supervisor", self._supervise), ("heartbeat", self._heartbeat_loop)):
            thread = threading.Thread(target=target, name=f"probeshell-{name}", daemon=True)
            self._threads[name] = thread
            thread.start()

    def stop(self) -> None:
        self._stopped.set()
        self._wake.set()
        self._remove_log_capture()
        with self._connect_lock:
            sock, self._sock = self._sock, None
            if sock is not None:
                self._close(sock)
            self._set_state(ConnectionState.DISCONNECTED)
        for thread in list(self._threads.values()):
            if thread is not threading.current_thread():
                thread.join(timeout=1.0)
        self._threads.clear()

    def reconnect(self) -> None:
        """
        Drop the current session (if any) and connect again without waiting.

        Hands off to the supervisor when the agent was started, otherwise
        connects on the calling thread.
        """
        sock = self._sock
        if sock is not None and self._drop_session(sock):
            logger.info("Reconnect requested")
        self._session_lost = False
        if "supervisor" in self._threads:
            self._wake.set()
        else:
            self.connect_with_retry()

    def resume(self) -> None:
        """Host came back from a pause: reconnect only if the session is gone."""
        if not self.is_connected:
            self.reconnect()

    def _supervise(self) -> None:
        while not self._stopped.is_set():
            if not self.is_connected:
                if self._session_lost:
                    # a dropped session waits one delay before the next attempt
                    self._session_lost = False
                    self._sleep(self.config.reconnect_delay)
                self.connect_with_retry()
            self._wake.wait()
            self._wake.clear()

    def connect_with_retry(self) -> bool:
        while not self._stopped.is_set():
            if self.connect():
                return True
            self._sleep(self.config.reconnect_delay)
        return False

    def connect(self) -> bool:
        """Single connect attempt, blocking up to connect_timeout."""
        with self._connect_lock:
            if self.is_connected:
                return True
            self._set_state(ConnectionState.CONNECTING)
            address = (self.config.host, self.config.port)
            try:
                sock = self._connector(address, timeout=self.config.connect_timeout)
            except OSError as e:
                self._set_state(ConnectionState.RECONNECTING)
                logger.error("Failed to connect to relay %s:%s: %s", *address, e)
                return False

            sock.settimeout(self.config.connect_timeout)
            self._sock = sock
            self._set_state(ConnectionState.CONNECTED)
            if not self.send_device_info():
                return False
            receiver = threading.Thread(
                target=self._receive_loop,
                args=(sock, framing.make_framer(self.config.framing)),
                name="probeshell-receive",
                daemon=True,
            )
            self._threads["receive"] = receiver
            receiver.start()
        logger.info("Connected to relay %s:%s", *address)
        return True

    def _drop_session(self, sock: socket.socket) -> bool:
        with self._connect_lock:
            if self._sock is not sock:
                return False
            self._sock = None
            self._close(sock)
            self._set_state(ConnectionState.DISCONNECTED if self._stopped.is_set()
                            else ConnectionState.RECONNECTING)
            return True

    def _handle_disconnect(self, sock: socket.socket, exc: Optional[BaseException]) -> None:
        if not self._drop_session(sock):
            return
        if exc is not None:
            logger.error("Lost connection to relay: %s", exc)
        else:
            logger.warning("Relay closed the connection")
        self._session_lost = True
        self._wake.set()

    @staticmethod
    def _close(sock: socket.socket) -> None:
        try:
            sock.close()
        except OSError:
            pass

    #
    # Outbound
    #
    def send_message(self, msg: dict) -> bool:
        """Send one framed message; returns False when not connected or on I/O error."""
        sock = self._sock
        if sock is None or not self.is_connected:
            return False
        data = framing.encode_message(msg, self.config.framing)
        try:
            with self._send_lock:
                sock.sendall(data)
        except OSError as e:
            self._handle_disconnect(sock, e)
            return False
        return True

    def get_metadata(self) -> dict:
        """Device metadata for the device_info announcement."""
        return {
            "id": self.device_id,
            "deviceName": platform.node(),
            "deviceModel": platform.machine(),
            "operatingSystem": platform.platform(),
            "processorType": platform.processor() or platform.machine(),
            "systemMemorySize": _system_memory_mb(),
            "processMemoryPeak": _peak_memory_mb(),
            "pythonVersion": platform.python_version(),
            "pythonImplementation": platform.python_implementation(),
            "platform": sys.platform,
            "pid": os.getpid(),
            "executable": sys.executable,
            "productName": self.config.product_name,
            "version": self.config.version,
            "timestamp": datetime.now().strftime(protocol.DEVICE_TIMESTAMP_FORMAT),
        }

    def send_device_info(self) -> bool:
        return self.send_message(protocol.device_info_message(self.get_metadata()))

    def _heartbeat_loop(self) -> None:
        while not self._stopped.wait(self.config.heartbeat_interval):
            if self.is_connected:
                self.send_device_info()

    def send_log(self, record: LogRecord) -> None:
        """Push a record straight to the relay; dropped while not connected."""
        if not self.is_connected:
            return
        self.send_message(protocol.log_message(
            record.type.value,
            record.message,
            record.stack_trace,
            protocol.format_log_timestamp(record.timestamp),
        ))

    def _install_log_capture(self) -> None:
        self._handler = RemoteLogHandler(self.send_log, buffer=self.log_buffer)
        root = logging.getLogger()
        root.addHandler(self._handler)
        if root.getEffectiveLevel() > self.config.capture_level:
            root.setLevel(self.config.capture_level)

    def _remove_log_capture(self) -> None:
        if self._handler is not None:
            logging.getLogger().removeHandler(self._handler)
            self._handler = None

    #
    # Inbound
    #
    def _receive_loop(self, sock: socket.socket, framer: framing.Framer) -> None:
        while not self._stopped.is_set() and self._sock is sock:
            try:
                readable, _, _ = select.select([sock], [], [], 0)
                if not readable:
                    time.sleep(self.config.poll_interval)
                    continue
                chunk = sock.recv(RECV_SIZE)
            except (OSError, ValueError) as e:
                self._handle_disconnect(sock, e)
                return
            if not chunk:
                self._handle_disconnect(sock, None)
                return
            try:
                for frame in framer.feed(chunk):
                    message = protocol.parse_frame(frame)
                    if message is not None:
                        self.process_command(message)
            except ValueError as e:
                self._handle_disconnect(sock, e)
                return

    def process_command(self, message: dict) -> None:
        msg_type = message.get("type")
        if msg_type == protocol.EXECUTE_CODE:
            data = message.get("data") or {}
            code = data.get("code", "") if isinstance(data, dict) else ""
            logger.info("Received code execution command: %s", code)
            self.dispatcher.enqueue(lambda: self.executor.execute(code))
        else:
            logger.warning("Unknown message type: %s", msg_type)

    #
    # Host main turn
    #
    def tick(self) -> int:
        """
        Called by the host on its main thread once per turn.

        Rescans the execution context when it is due, then runs every
        queued command. Returns the number of commands run.
        """
        last = self.context.last_rescan
        if last is None or time.monotonic() - last >= self.config.rescan_interval:
            self.context.rescan()
        return self.dispatcher.drain()

    def execute_locally(self, code: str) -> Any:
        """Run a snippet directly on the calling thread, bypassing the relay."""
        return self.executor.execute(code)


def _loaded_modules() -> Dict[str, Any]:
    return {name: mod for name, mod in list(sys.modules.items())
            if '.' not in name and not name.startswith('_')}


def main():
    parser = argparse.ArgumentParser(description="probeshell Agent (standalone host)")
    parser.add_argument("--host", "-H", default="127.0.0.1",
                        help="Relay address (default: 127.0.0.1)")
    parser.add_argument("--port", "-p", type=int, default=8002,
                        help="Relay agent port (default: 8002)")
    parser.add_argument("--framing", choices=framing.FRAMINGS, default=framing.BRACE,
                        help="Stream framing (default: brace)")
    parser.add_argument("--reconnect-delay", type=float, default=5.0,
                        help="Seconds between connect attempts (default: 5)")
    parser.add_argument("--heartbeat", type=float, default=30.0,
                        help="Heartbeat interval in seconds (default: 30)")
    parser.add_argument("--name", default="probeshell-agent",
                        help="Product name reported to the relay")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    args = parser.parse_args()

    logging.basicConfig(level=args.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print("[i] probeshell Agent v0.1")
    print("[i] Executes any code the relay sends. Trusted networks only.\n")

    config = AgentConfig(
        host=args.host,
        port=args.port,
        framing=args.framing,
        reconnect_delay=args.reconnect_delay,
        heartbeat_interval=args.heartbeat,
        product_name=args.name,
        version="0.1",
        capture_level=min(logging.INFO, logging.getLevelName(args.log_level)),
    )
    context = ExecutionContext(
        {"log": logging.getLogger("host")},
        providers=[_loaded_modules],
    )
    agent = Agent(config, context)
    context["agent"] = agent
    agent.start()

    try:
        while True:
            agent.tick()
            time.sleep(0.05)
    except KeyboardInterrupt:
        print("\n[i] Agent interrupted")
    finally:
        agent.stop()


if __name__ == "__main__":
    main()
