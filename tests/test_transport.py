"""Tests for the HTTP transport, configuration, and client."""

import contextlib
import asyncio
import json
import os
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from shared.config import ServerSettings, Settings, parse_bind_address
from shared.errors import BindError
from time_server.cancellation import CancellationController

INIT = {
    "jsonrpc": "2.0",
    "id": 0,
    "method": "initialize",
    "params": {
        "protocolVersion": "2024-11-05",
        "capabilities": {},
        "clientInfo": {"name": "pytest", "version": "1.0"},
    },
}
JSON_ONLY = {"Accept": "application/json"}
SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def _settings(**server) -> Settings:
    server.setdefault("enable_audit", False)
    return Settings(server=ServerSettings(**server))


def _call(request_id, name, arguments=None) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments or {}},
    }


class TestConfig:
    """Tests for settings and bind address parsing."""

    @pytest.mark.parametrize("address,expected", [
        ("127.0.0.1:8000", ("127.0.0.1", 8000)),
        ("0.0.0.0:0", ("0.0.0.0", 0)),
        ("localhost:9000", ("localhost", 9000)),
        ("[::1]:8080", ("::1", 8080)),
    ])
    def test_parse_bind_address(self, address, expected):
        assert parse_bind_address(address) == expected

    @pytest.mark.parametrize("address", ["8000", ":8000", "host:", "host:http", "host:70000", "::1:80"])
    def test_parse_bind_address_rejects(self, address):
        with pytest.raises(ValueError):
            parse_bind_address(address)

    def test_default_bind_address(self, monkeypatch):
        """Test the default when no override is set."""
        monkeypatch.delenv("BIND_ADDRESS", raising=False)
        monkeypatch.delenv("MCP_BIND_ADDRESS", raising=False)

        settings = Settings()

        assert settings.bind_address == "127.0.0.1:8000"
        assert settings.host == "127.0.0.1"
        assert settings.port == 8000

    def test_bind_address_from_environment(self, monkeypatch):
        """Test the BIND_ADDRESS override."""
        monkeypatch.setenv("BIND_ADDRESS", "0.0.0.0:9100")
        assert Settings().bind_address == "0.0.0.0:9100"

    def test_invalid_bind_address(self, monkeypatch):
        monkeypatch.setenv("BIND_ADDRESS", "nonsense")
        with pytest.raises(ValidationError):
            Settings()

    def test_from_yaml(self, tmp_path, monkeypatch):
        """Test loading a YAML file."""
        monkeypatch.delenv("BIND_ADDRESS", raising=False)
        config = tmp_path / "settings.yaml"
        config.write_text(
            "log_level: DEBUG\n"
            "bind_address: 127.0.0.1:9001\n"
            "clock:\n"
            "  default_timezone: UTC\n"
        )

        settings = Settings.from_yaml(config)

        assert settings.log_level == "DEBUG"
        assert settings.port == 9001
        assert settings.clock.default_timezone == "UTC"

    def test_from_missing_yaml(self, tmp_path):
        assert Settings.from_yaml(tmp_path / "missing.yaml").server.endpoint_path == "/mcp"


class TestHTTPEndpoint:
    """Tests for the /mcp endpoint."""

    def setup_method(self):
        from time_server.main import create_app

        self.app = create_app(_settings(json_response=True))

    def _initialize(self, client: TestClient) -> str:
        response = client.post("/mcp", json=INIT, headers=JSON_ONLY)
        assert response.status_code == 200
        return response.headers["mcp-session-id"]

    def test_initialize(self):
        """Test session creation and capability negotiation."""
        with TestClient(self.app) as client:
            response = client.post("/mcp", json=INIT, headers=JSON_ONLY)

        assert response.status_code == 200
        assert response.headers["mcp-session-id"]
        result = response.json()["result"]
        assert result["protocolVersion"] == "2024-11-05"
        assert "tools" in result["capabilities"]
        assert "get_time" in result["instructions"]
        assert "wait" in result["instructions"]

    def test_tool_catalog_is_stable_across_sessions(self):
        """Test that every session sees exactly get_time and wait."""
        with TestClient(self.app) as client:
            catalogs = []
            for _ in range(3):
                session_id = self._initialize(client)
                response = client.post(
                    "/mcp",
                    json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
                    headers={**JSON_ONLY, "Mcp-Session-Id": session_id},
                )
                catalogs.append(response.json()["result"]["tools"])

        for tools in catalogs:
            assert {t["name"] for t in tools} == {"get_time", "wait"}
            by_name = {t["name"]: t for t in tools}
            assert by_name["get_time"]["inputSchema"]["properties"]["timezone"]["type"] == "string"
            assert by_name["wait"]["inputSchema"]["required"] == ["seconds"]

    def test_call_get_time(self):
        """Test a successful tool call."""
        with TestClient(self.app) as client:
            session_id = self._initialize(client)
            response = client.post(
                "/mcp",
                json=_call(2, "get_time", {"timezone": "UTC"}),
                headers={**JSON_ONLY, "Mcp-Session-Id": session_id},
            )

        result = response.json()["result"]
        assert result["isError"] is False
        assert result["content"][0]["type"] == "text"
        assert result["content"][0]["text"].startswith("Current time (UTC): ")

    def test_call_invalid_timezone(self):
        """Test that the error echoes the bad identifier."""
        with TestClient(self.app) as client:
            session_id = self._initialize(client)
            response = client.post(
                "/mcp",
                json=_call(3, "get_time", {"timezone": "Not/AZone"}),
                headers={**JSON_ONLY, "Mcp-Session-Id": session_id},
            )

        error = response.json()["error"]
        assert error["code"] == -32602
        assert error["data"]["kind"] == "invalid_params"
        assert error["data"]["timezone"] == "Not/AZone"

    def test_call_unknown_tool(self):
        with TestClient(self.app) as client:
            session_id = self._initialize(client)
            response = client.post(
                "/mcp",
                json=_call(4, "launch_rocket"),
                headers={**JSON_ONLY, "Mcp-Session-Id": session_id},
            )

        error = response.json()["error"]
        assert error["data"]["kind"] == "tool_not_found"

    def test_missing_session_header(self):
        with TestClient(self.app) as client:
            response = client.post(
                "/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "ping"}, headers=JSON_ONLY
            )
        assert response.status_code == 400

    def test_unknown_session(self):
        with TestClient(self.app) as client:
            response = client.post(
                "/mcp",
                json={"jsonrpc": "2.0", "id": 1, "method": "ping"},
                headers={**JSON_ONLY, "Mcp-Session-Id": "nope"},
            )
        assert response.status_code == 404

    def test_notification_accepted(self):
        with TestClient(self.app) as client:
            session_id = self._initialize(client)
            response = client.post(
                "/mcp",
                json={"jsonrpc": "2.0", "method": "notifications/initialized"},
                headers={**JSON_ONLY, "Mcp-Session-Id": session_id},
            )
        assert response.status_code == 202

    def test_parse_error(self):
        with TestClient(self.app) as client:
            response = client.post(
                "/mcp",
                content=b"{not json",
                headers={**JSON_ONLY, "Content-Type": "application/json"},
            )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == -32700

    def test_delete_session(self):
        """Test explicit session termination."""
        with TestClient(self.app) as client:
            session_id = self._initialize(client)
            headers = {**JSON_ONLY, "Mcp-Session-Id": session_id}

            deleted = client.delete("/mcp", headers=headers)
            again = client.delete("/mcp", headers=headers)
            after = client.post(
                "/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "ping"}, headers=headers
            )

        assert deleted.status_code == 204
        assert again.status_code == 404
        assert after.status_code == 404

    def test_get_not_allowed(self):
        with TestClient(self.app) as client:
            assert client.get("/mcp").status_code == 405

    def test_health(self):
        with TestClient(self.app) as client:
            self._initialize(client)
            body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["tools"] == ["get_time", "wait"]
        assert body["session_count"] == 1


class TestStreamingResponses:
    """Tests for SSE-framed responses."""

    def test_sse_when_accepted(self):
        from time_server.main import create_app

        app = create_app(_settings(json_response=False))
        accept = {"Accept": "application/json, text/event-stream"}

        with TestClient(app) as client:
            init = client.post("/mcp", json=INIT, headers=accept)
            session_id = init.headers["mcp-session-id"]
            response = client.post(
                "/mcp",
                json=_call(1, "wait", {"seconds": 0}),
                headers={**accept, "Mcp-Session-Id": session_id},
            )

        assert init.headers["content-type"].startswith("text/event-stream")
        assert response.headers["content-type"].startswith("text/event-stream")
        data_line = next(l for l in response.text.splitlines() if l.startswith("data:"))
        body = json.loads(data_line[len("data:"):])
        assert "Duration: 0 seconds" in body["result"]["content"][0]["text"]


class TestCancellationOverHTTP:
    """Tests for cancellation reaching in-flight waits through the transport."""

    async def _start(self, app):
        transport = httpx.ASGITransport(app=app)
        client = httpx.AsyncClient(transport=transport, base_url="http://test")
        init = await client.post("/mcp", json=INIT, headers=JSON_ONLY)
        session_id = init.headers["mcp-session-id"]
        return client, {**JSON_ONLY, "Mcp-Session-Id": session_id}

    @pytest.mark.asyncio
    async def test_delete_cancels_in_flight_wait(self):
        from time_server.main import create_app

        app = create_app(_settings(json_response=True))
        client, headers = await self._start(app)
        async with contextlib.aclosing(client):
            call = asyncio.create_task(
                client.post("/mcp", json=_call(5, "wait", {"seconds": 30}), headers=headers)
            )
            await asyncio.sleep(0.1)
            await client.delete("/mcp", headers=headers)
            response = await asyncio.wait_for(call, timeout=2)

        error = response.json()["error"]
        assert error["code"] == -32800
        assert error["data"]["kind"] == "operation_cancelled"

    @pytest.mark.asyncio
    async def test_cancelled_notification(self):
        """Test that notifications/cancelled aborts only the named request."""
        from time_server.main import create_app

        app = create_app(_settings(json_response=True))
        client, headers = await self._start(app)
        async with contextlib.aclosing(client):
            long_wait = asyncio.create_task(
                client.post("/mcp", json=_call("w-1", "wait", {"seconds": 30}), headers=headers)
            )
            short_wait = asyncio.create_task(
                client.post("/mcp", json=_call("w-2", "wait", {"seconds": 1}), headers=headers)
            )
            await asyncio.sleep(0.1)
            await client.post(
                "/mcp",
                json={
                    "jsonrpc": "2.0",
                    "method": "notifications/cancelled",
                    "params": {"requestId": "w-1", "reason": "user"},
                },
                headers=headers,
            )
            cancelled = await asyncio.wait_for(long_wait, timeout=2)
            completed = await asyncio.wait_for(short_wait, timeout=3)

        assert cancelled.json()["error"]["data"]["kind"] == "operation_cancelled"
        assert "Duration: 1 seconds" in completed.json()["result"]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_every_session(self):
        from time_server.main import create_app

        controller = CancellationController()
        app = create_app(_settings(json_response=True), controller=controller)
        first, first_headers = await self._start(app)
        second, second_headers = await self._start(app)

        async with contextlib.aclosing(first), contextlib.aclosing(second):
            calls = [
                asyncio.create_task(
                    first.post("/mcp", json=_call(1, "wait", {"seconds": 30}), headers=first_headers)
                ),
                asyncio.create_task(
                    second.post("/mcp", json=_call(1, "wait", {"seconds": 30}), headers=second_headers)
                ),
            ]
            await asyncio.sleep(0.1)
            controller.shutdown()
            responses = await asyncio.wait_for(asyncio.gather(*calls), timeout=2)

        for response in responses:
            assert response.json()["error"]["data"]["kind"] == "operation_cancelled"

    @pytest.mark.asyncio
    async def test_duplicate_in_flight_id_rejected(self):
        """Test that reusing an id still in flight is an invalid request."""
        from time_server.main import create_app

        app = create_app(_settings(json_response=True))
        client, headers = await self._start(app)
        async with contextlib.aclosing(client):
            first = asyncio.create_task(
                client.post("/mcp", json=_call("dup", "wait", {"seconds": 30}), headers=headers)
            )
            await asyncio.sleep(0.1)
            second = await client.post(
                "/mcp", json=_call("dup", "wait", {"seconds": 0}), headers=headers
            )
            await client.post(
                "/mcp",
                json={"jsonrpc": "2.0", "method": "notifications/cancelled", "params": {"requestId": "dup"}},
                headers=headers,
            )
            original = await asyncio.wait_for(first, timeout=2)

        assert second.json()["error"]["code"] == -32600
        assert second.json()["id"] == "dup"
        assert original.json()["error"]["data"]["kind"] == "operation_cancelled"


class TestClientDisconnect:
    """Tests for a client dropping its SSE response."""

    @staticmethod
    def _scope(session_id: str) -> dict:
        return {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": "/mcp",
            "raw_path": b"/mcp",
            "root_path": "",
            "query_string": b"",
            "headers": [
                (b"host", b"test"),
                (b"content-type", b"application/json"),
                (b"accept", b"application/json, text/event-stream"),
                (b"mcp-session-id", session_id.encode()),
            ],
            "client": ("127.0.0.1", 50000),
            "server": ("test", 80),
        }

    @pytest.mark.asyncio
    async def test_disconnect_cancels_only_that_request(self):
        from time_server.main import create_app

        app = create_app(_settings(json_response=False))
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
        init = await client.post("/mcp", json=INIT, headers=JSON_ONLY)
        session_id = init.headers["mcp-session-id"]
        headers = {**JSON_ONLY, "Mcp-Session-Id": session_id}
        session = await app.state.sessions.get(session_id)

        body = json.dumps(_call("drop", "wait", {"seconds": 30})).encode()
        disconnected = asyncio.Event()
        delivered = False

        async def receive():
            nonlocal delivered
            if not delivered:
                delivered = True
                return {"type": "http.request", "body": body, "more_body": False}
            await disconnected.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            pass

        async with contextlib.aclosing(client):
            kept = asyncio.create_task(
                client.post("/mcp", json=_call("keep", "wait", {"seconds": 1}), headers=headers)
            )
            started = time.monotonic()
            dropped = asyncio.create_task(app(self._scope(session_id), receive, send))
            await asyncio.sleep(0.1)
            assert sorted(session.in_flight) == ["drop", "keep"]

            disconnected.set()
            await asyncio.wait_for(dropped, timeout=2)
            for _ in range(100):
                if "drop" not in session.in_flight:
                    break
                await asyncio.sleep(0.01)
            drop_resolved = time.monotonic() - started

            completed = await asyncio.wait_for(kept, timeout=3)

        assert drop_resolved < 2
        assert session.in_flight == []
        assert session.is_open
        assert "Duration: 1 seconds" in completed.json()["result"]["content"][0]["text"]


class TestMCPClient:
    """End-to-end tests through the bundled client."""

    @pytest.mark.asyncio
    async def test_client_round_trip(self):
        from mcp_client import MCPClient, MCPToolError
        from time_server.main import create_app

        app = create_app(_settings())
        http_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")

        async with http_client:
            async with MCPClient("http://test/mcp", http_client=http_client) as client:
                assert client.session_id
                tools = await client.list_tools()
                text = await client.call_tool("get_time", {"timezone": "Europe/Paris"})

                with pytest.raises(MCPToolError) as exc_info:
                    await client.call_tool("get_time", {"timezone": "Not/AZone"})

                session_id = client.session_id

            assert await app.state.sessions.get(session_id) is None

        assert [t["name"] for t in tools] == ["get_time", "wait"]
        assert text.startswith("Current time (Europe/Paris): ")
        assert exc_info.value.kind == "invalid_params"
        assert exc_info.value.data["timezone"] == "Not/AZone"


class TestTransportServer:
    """Tests for binding and shutdown signalling."""

    def test_bind_failure(self):
        """Test that an occupied port raises BindError."""
        from time_server.transport import bind_socket

        with socket.create_server(("127.0.0.1", 0)) as occupied:
            port = occupied.getsockname()[1]
            with pytest.raises(BindError):
                bind_socket("127.0.0.1", port)

    def test_main_exits_nonzero_on_bind_failure(self, monkeypatch):
        from time_server import main as main_module

        with socket.create_server(("127.0.0.1", 0)) as occupied:
            port = occupied.getsockname()[1]
            settings = _settings()
            settings.bind_address = f"127.0.0.1:{port}"
            monkeypatch.setattr(main_module, "get_settings", lambda: settings)

            assert main_module.main() == 1

    @pytest.mark.asyncio
    async def test_exit_signal_cancels_root(self):
        """Test that the exit signal cancels the root before draining."""
        import uvicorn

        from time_server.main import create_app
        from time_server.transport import GracefulServer

        controller = CancellationController()
        controller.bind_loop(asyncio.get_running_loop())
        app = create_app(_settings(), controller=controller)
        server = GracefulServer(uvicorn.Config(app), controller)

        server.handle_exit(signal.SIGINT, None)
        await asyncio.sleep(0)

        assert server.should_exit
        assert controller.root().is_cancelled()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
    @pytest.mark.parametrize("sig", [signal.SIGINT, signal.SIGTERM])
    def test_exit_signal_exits_cleanly(self, sig, tmp_path):
        """Test that the server process exits 0 after a signal-driven drain."""
        with socket.create_server(("127.0.0.1", 0)) as spare:
            port = spare.getsockname()[1]

        env = {
            **os.environ,
            "BIND_ADDRESS": f"127.0.0.1:{port}",
            "MCP_SERVER_ENABLE_AUDIT": "false",
            "MCP_SERVER_DRAIN_SECONDS": "1",
            "MCP_CONFIG_PATH": str(tmp_path / "missing.yaml"),
            "PYTHONPATH": os.pathsep.join(filter(None, [str(SRC_DIR), os.environ.get("PYTHONPATH")])),
        }
        process = subprocess.Popen(
            [sys.executable, "-c", "import sys; from time_server.main import main; sys.exit(main())"],
            env=env,
            cwd=tmp_path,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        try:
            deadline = time.monotonic() + 15
            while True:
                assert process.poll() is None, "server exited before becoming healthy"
                try:
                    if httpx.get(f"http://127.0.0.1:{port}/health", timeout=1, trust_env=False).status_code == 200:
                        break
                except httpx.TransportError:
                    pass
                assert time.monotonic() < deadline, "server did not become healthy"
                time.sleep(0.1)

            process.send_signal(sig)

            assert process.wait(timeout=15) == 0
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
