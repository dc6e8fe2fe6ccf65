"""Tests for the JSONL status server and its client helper."""

import asyncio
import json

import pytest

from arowss.communication import StatusServer, query_status


class StubController:
    def __init__(self):
        self.shutdown_reasons = []
        self.restart_reasons = []

    def snapshot(self):
        return {"phase": "running", "tier": "reduced", "consecutive_failures": 0}

    def request_shutdown(self, reason="operator request"):
        self.shutdown_reasons.append(reason)

    def request_restart(self, reason="operator request"):
        self.restart_reasons.append(reason)


def _serve(controller, trusted=("127.0.0.1",)):
    return StatusServer(controller, "127.0.0.1", 0, list(trusted))


def test_status_and_stop_commands():
    async def scenario():
        controller = StubController()
        server = _serve(controller)
        await server.start_server()
        try:
            status = await query_status("127.0.0.1", server.port, "status")
            stopped = await query_status("127.0.0.1", server.port, "stop")
        finally:
            await server.close()
        return controller, status, stopped

    controller, status, stopped = asyncio.run(scenario())
    assert status["phase"] == "running"
    assert status["tier"] == "reduced"
    assert stopped == {"ok": True}
    assert len(controller.shutdown_reasons) == 1


def test_several_commands_on_one_connection():
    async def scenario():
        server = _serve(StubController())
        await server.start_server()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
            writer.write(b'{"command": "status"}\n\nnot json\n{"command": "reboot"}\n')
            await writer.drain()
            replies = [json.loads(await reader.readline()) for _ in range(3)]
            writer.close()
            await writer.wait_closed()
        finally:
            await server.close()
        return replies

    status, bad_json, unknown = asyncio.run(scenario())
    assert status["phase"] == "running"
    assert bad_json["error"].startswith("invalid JSON")
    assert unknown == {"error": "unknown command: reboot"}


def test_untrusted_client_is_disconnected():
    async def scenario():
        controller = StubController()
        server = _serve(controller, trusted=("192.168.199.",))
        await server.start_server()
        try:
            with pytest.raises(ConnectionError):
                await query_status("127.0.0.1", server.port, "stop")
        finally:
            await server.close()
        return controller

    assert asyncio.run(scenario()).shutdown_reasons == []


def test_handle_command_rejects_non_objects():
    server = _serve(StubController())
    assert server.handle_command(b"[1, 2]") == {"error": "command must be a JSON object"}
    assert server.handle_command(b'{"command": "status"}\n')["tier"] == "reduced"


def test_trusted_prefix_matching():
    server = _serve(StubController(), trusted=("127.0.0.1", "192.168.199."))
    assert server._is_trusted("192.168.199.23")
    assert server._is_trusted("127.0.0.1")
    assert not server._is_trusted("10.0.0.5")


def test_restart_command_requests_pipeline_restart():
    async def scenario():
        controller = StubController()
        server = _serve(controller)
        await server.start_server()
        try:
            reply = await query_status("127.0.0.1", server.port, "restart")
        finally:
            await server.close()
        return controller, reply

    controller, reply = asyncio.run(scenario())
    assert reply == {"ok": True}
    assert len(controller.restart_reasons) == 1
    assert controller.shutdown_reasons == []
