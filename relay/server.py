#!/usr/bin/env python3
"""
probeshell Relay Server
Bridges TCP-connected agents and WebSocket-connected observers.

Responsibilities:
- Accept agent connections and decode their framed JSON stream
- Track live agents in the device registry
- Fan logs out to observers, forward execute_code to agents
- Serve the device list over REST
"""

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import uvicorn
from fastapi import FastAPI, WebSocket

from . import framing, protocol
from .gateway import ObserverGateway
from .registry import DeviceRegistry
from .router import MessageRouter

logger = logging.getLogger(__name__)

READ_SIZE = 4096


@dataclass
class RelayConfig:
    host: str = "0.0.0.0"
    tcp_port: int = 8002
    http_port: int = 3001
    framing: str = framing.BRACE


class AgentSession:
    """Represents a connected agent's TCP session."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 framing_mode: str = framing.BRACE):
        self.reader = reader
        self.writer = writer
        addr = writer.get_extra_info("peername")
        self.id = f"{addr[0]}:{addr[1]}" if addr else "unknown"
        self.device_id: Optional[str] = None
        self.device_ids: Set[str] = set()
        self.framing = framing_mode
        self.framer = framing.make_framer(framing_mode)
        self.active = True

    @property
    def connected(self) -> bool:
        return self.active and not self.writer.is_closing()

    def send(self, msg: Dict[str, Any]) -> None:
        """Write one framed message to the agent."""
        if not self.connected:
            return
        try:
            self.writer.write(framing.encode_message(msg, self.framing))
        except (OSError, RuntimeError) as e:
            logger.error("Agent %s send error: %s", self.id, e)
            self.active = False

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Decoded messages until the agent disconnects."""
        while True:
            chunk = await self.reader.read(READ_SIZE)
            if not chunk:
                return
            for frame in self.framer.feed(chunk):
                message = protocol.parse_frame(frame)
                if message is not None:
                    yield message

    def close(self) -> None:
        self.active = False
        if not self.writer.is_closing():
            self.writer.close()


class RelayServer:
    def __init__(self, config: Optional[RelayConfig] = None):
        self.config = config or RelayConfig()
        self.registry = DeviceRegistry()
        self.gateway = ObserverGateway(self.registry)
        self.router = MessageRouter(self.registry, self.gateway)
        self.sessions: Set[AgentSession] = set()
        self._tcp_server: Optional[asyncio.AbstractServer] = None

    @property
    def tcp_port(self) -> Optional[int]:
        """Port actually bound for agents (useful with tcp_port=0)."""
        if self._tcp_server is None or not self._tcp_server.sockets:
            return None
        return self._tcp_server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._tcp_server = await asyncio.start_server(
            self.handle_agent, self.config.host, self.config.tcp_port
        )
        logger.info("TCP server started on %s:%s (%s framing)",
                    self.config.host, self.tcp_port, self.config.framing)

    async def stop(self) -> None:
        server, self._tcp_server = self._tcp_server, None
        if server is None:
            return
        server.close()
        for session in list(self.sessions):
            session.close()
        await server.wait_closed()
        logger.info("TCP server stopped")

    async def handle_agent(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        session = AgentSession(reader, writer, self.config.framing)
        self.sessions.add(session)
        logger.info("New TCP client connected: %s", session.id)
        try:
            async for message in session.messages():
                await self.router.handle_agent_message(session, message)
        except ValueError as e:
            logger.error("Framing error from %s: %s", session.id, e)
        except OSError as e:
            logger.error("Socket error from %s: %s", session.id, e)
        finally:
            session.close()
            self.sessions.discard(session)
            await self.router.agent_disconnected(session)


def create_app(config: Optional[RelayConfig] = None) -> FastAPI:
    """FastAPI app serving the observer WebSocket and REST API; runs the agent listener."""
    relay = RelayServer(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await relay.start()
        try:
            yield
        finally:
            await relay.stop()

    app = FastAPI(title="probeshell-relay", version="0.1.0", lifespan=lifespan)
    app.state.relay = relay

    @app.get("/api/devices")
    async def list_devices() -> List[Dict[str, Any]]:
        return relay.registry.snapshot()

    @app.websocket("/")
    async def observer_socket(websocket: WebSocket):
        await websocket.accept()
        session = await relay.gateway.connect(websocket)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("text") is not None:
                    await relay.gateway.receive(session, message["text"])
                else:
                    logger.warning("Observer %s sent a binary frame, ignoring", session.id)
        finally:
            relay.gateway.disconnect(session)

    return app


def main():
    parser = argparse.ArgumentParser(description="probeshell Relay Server")
    parser.add_argument("--host", default="0.0.0.0",
                        help="Interface to bind (default: 0.0.0.0)")
    parser.add_argument("--tcp-port", "-t", type=int, default=8002,
                        help="Port agents connect to (default: 8002)")
    parser.add_argument("--http-port", "-p", type=int, default=3001,
                        help="Port for observers and the REST API (default: 3001)")
    parser.add_argument("--framing", choices=framing.FRAMINGS, default=framing.BRACE,
                        help="Agent stream framing (default: brace)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    args = parser.parse_args()

    logging.basicConfig(level=args.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print("[i] probeshell Relay v0.1")
    print(f"[i] Agents: tcp://{args.host}:{args.tcp_port}  Observers: ws://{args.host}:{args.http_port}/\n")

    config = RelayConfig(
        host=args.host,
        tcp_port=args.tcp_port,
        http_port=args.http_port,
        framing=args.framing,
    )
    uvicorn.run(create_app(config), host=args.host, port=args.http_port,
                log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
