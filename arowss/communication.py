"""
communication.py

Implements StatusServer, the operator-facing async TCP server.
Trusted clients send newline-delimited JSON commands and receive one JSON
reply per command:

    {"command": "status"}  -> controller snapshot
    {"command": "stop"}    -> {"ok": true}, controller shuts down
    {"command": "restart"} -> {"ok": true}, pipeline restarts with its current spec

Also provides query_status(), the client side used by the CLI.
"""

import asyncio
import json
import logging
from typing import Optional, Any

log = logging.getLogger(__name__)


class StatusServer:
    """
    Asynchronous TCP server exposing controller state.

    - Accepts connections from trusted clients only (IP prefixes).
    - Parses JSONL commands line-by-line, replies with JSONL.
    - Serves any number of clients; each connection is independent.
    """

    def __init__(
        self,
        controller,
        host: str = "0.0.0.0",
        port: int = 9000,
        trusted_clients: list[str] = ["127.0.0.1"],
    ):
        """
        Args:
            controller: StreamController (needs snapshot(), request_shutdown() and request_restart()).
            host (str): IP address or hostname to bind to.
            port (int): TCP port to listen on; 0 picks a free port.
            trusted_clients (list[str]): IPs or subnet prefixes to allow.
        """
        self.controller = controller
        self.host = host
        self.port = port
        self.trusted_clients = trusted_clients
        self.server: Optional[asyncio.base_events.Server] = None

    async def start_server(self):
        self.server = await asyncio.start_server(self._handle_client, self.host, self.port)
        self.port = self.server.sockets[0].getsockname()[1]
        log.info(f"[Status] Server started on {self.host}:{self.port}")

    async def close(self):
        if self.server is None:
            return
        self.server.close()
        await self.server.wait_closed()
        self.server = None
        log.info("[Status] Server closed")

    def _is_trusted(self, ip: str) -> bool:
        for trusted in self.trusted_clients:
            if ip.startswith(trusted):
                return True
        return False

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        addr = writer.get_extra_info("peername")
        if not addr or not self._is_trusted(addr[0]):
            log.warning(f"[Status] Rejected connection from untrusted IP: {addr}")
            writer.close()
            await writer.wait_closed()
            return
        log.debug(f"[Status] Client connected: {addr}")
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                reply = self.handle_command(line)
                writer.write((json.dumps(reply) + "\n").encode("utf-8"))
                await writer.drain()
        except (ConnectionResetError, BrokenPipeError) as e:
            log.debug(f"[Status] Client {addr} dropped: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    def handle_command(self, line: bytes) -> dict[str, Any]:
        """Decode one JSONL command and build the reply."""
        try:
            command = json.loads(line.decode("utf-8").strip())
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            log.warning(f"[Status] Failed to parse JSON command: {e}")
            return {"error": f"invalid JSON: {e}"}
        if not isinstance(command, dict):
            return {"error": "command must be a JSON object"}

        cmd_type = command.get("command")
        if cmd_type == "status":
            return self.controller.snapshot()
        elif cmd_type == "stop":
            self.controller.request_shutdown("stop command from status client")
            return {"ok": True}
        elif cmd_type == "restart":
            self.controller.request_restart("restart command from status client")
            return {"ok": True}
        log.warning(f"[Status] Unknown command type received: {cmd_type}")
        return {"error": f"unknown command: {cmd_type}"}


async def query_status(host: str, port: int, command: str = "status", timeout: float = 3.0) -> dict:
    """Send one command to a running controller and return its reply."""
    reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    try:
        writer.write((json.dumps({"command": command}) + "\n").encode("utf-8"))
        await writer.drain()
        line = await asyncio.wait_for(reader.readline(), timeout)
        if not line:
            raise ConnectionError(f"{host}:{port} closed the connection without replying")
        return json.loads(line.decode("utf-8"))
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass
