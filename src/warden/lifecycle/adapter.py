"""Adapters that connect to a managed integration server and list its capabilities.

The default adapter speaks MCP JSON-RPC over the server process's stdio:
newline-delimited JSON messages on stdin/stdout.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from warden.catalog import ServerDefinition
from warden.lifecycle.process import STREAM_LIMIT, terminate_process

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-06-18"
CLIENT_INFO = {"name": "warden", "version": "0.1.0"}


class IntegrationAdapter(Protocol):
    """Connection to one integration server."""

    async def connect(self, env: Mapping[str, str]) -> None:
        """Start or reach the server and complete its handshake.

        Raises:
            ConnectionError: If the server cannot be reached
        """
        ...

    async def list_tools(self) -> list[dict[str, Any]]: ...

    async def list_resources(self) -> list[dict[str, Any]]: ...

    async def list_prompts(self) -> list[dict[str, Any]]: ...

    async def disconnect(self) -> None:
        """Release the connection. Safe to call when not connected."""
        ...


AdapterFactory = Callable[[ServerDefinition], IntegrationAdapter]


def parse_json_message(line: str) -> dict[str, Any] | None:
    """Parse one line of server output as a JSON-RPC message.

    Returns None for blank lines and anything that is not a JSON object.
    """
    line = line.strip()
    if not line:
        return None

    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return None
    return message if isinstance(message, dict) else None


def serialize_message(message: dict[str, Any]) -> str:
    """Serialize a message to a single line of JSON.

    Raises:
        ValueError: If the message is not JSON serializable
    """
    try:
        return json.dumps(message, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to serialize message to JSON: {e}") from e


class StdioIntegrationAdapter:
    """Spawns the server process and talks MCP JSON-RPC over its stdio."""

    def __init__(
        self,
        definition: ServerDefinition,
        request_timeout: float = 30.0,
        grace_period: float = 3.0,
    ):
        self._definition = definition
        self._request_timeout = request_timeout
        self._grace_period = grace_period

        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self.server_info: dict[str, Any] = {}
        self.server_capabilities: dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self._definition.name

    @property
    def is_connected(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def connect(self, env: Mapping[str, str]) -> None:
        command = [self._definition.command, *self._definition.args]
        logger.debug(f"Starting server subprocess '{self.name}': {command}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,
                env=dict(env),
                cwd=self._definition.cwd,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            self._process = None
            raise ConnectionError(f"Failed to start server '{self.name}': {e}") from e

        self._reader_task = asyncio.create_task(
            self._read_from_server(self._process.stdout), name=f"reader_task_{self.name}"
        )
        logger.debug(f"Server '{self.name}' subprocess started (PID: {self._process.pid})")

        try:
            result = await self._request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
            )
            await self._notify("notifications/initialized")
        except (ConnectionError, asyncio.TimeoutError) as e:
            await self.disconnect()
            raise ConnectionError(f"Handshake with server '{self.name}' failed: {e}") from e

        self.server_info = result.get("serverInfo", {})
        self.server_capabilities = result.get("capabilities", {})
        logger.info(
            f"Connected to server '{self.name}' "
            f"({self.server_info.get('name', 'unknown')} {self.server_info.get('version', '')})"
        )

    async def list_tools(self) -> list[dict[str, Any]]:
        return await self._list("tools/list", "tools", "tools")

    async def list_resources(self) -> list[dict[str, Any]]:
        return await self._list("resources/list", "resources", "resources")

    async def list_prompts(self) -> list[dict[str, Any]]:
        return await self._list("prompts/list", "prompts", "prompts")

    async def _list(self, method: str, capability: str, key: str) -> list[dict[str, Any]]:
        if self.server_capabilities and capability not in self.server_capabilities:
            return []
        try:
            result = await self._request(method, {})
        except ConnectionError as e:
            logger.warning(f"{method} failed for server '{self.name}': {e}")
            return []
        items = result.get(key, [])
        return [item for item in items if isinstance(item, dict)]

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        request_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._send(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
            )
            response = await asyncio.wait_for(future, timeout=self._request_timeout)
        finally:
            self._pending.pop(request_id, None)

        if "error" in response:
            error = response["error"]
            raise ConnectionError(
                f"Server '{self.name}' returned error for {method}: "
                f"{error.get('message', error) if isinstance(error, dict) else error}"
            )
        result = response.get("result")
        return result if isinstance(result, dict) else {}

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def _send(self, message: dict[str, Any]) -> None:
        if not self.is_connected or self._process.stdin is None:
            raise ConnectionError(f"Server '{self.name}' is not running")

        data = (serialize_message(message) + "\n").encode("utf-8")
        try:
            self._process.stdin.write(data)
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ConnectionError(f"Server '{self.name}' closed connection") from e

    async def _read_from_server(self, stdout: asyncio.StreamReader) -> None:
        """Route responses to their waiting requests until stdout closes."""
        try:
            while True:
                try:
                    line_bytes = await stdout.readline()
                except ValueError as e:
                    # readline discards the oversized line before raising
                    logger.warning(f"Dropping oversized message from '{self.name}': {e}")
                    continue
                if not line_bytes:
                    logger.debug(f"Server '{self.name}' closed stdout")
                    break

                line = line_bytes.decode("utf-8", errors="replace")
                message = parse_json_message(line)
                if message is None:
                    logger.debug(f"Ignoring non-JSON output from '{self.name}': {line.strip()}")
                    continue

                request_id = message.get("id")
                future = self._pending.get(request_id) if "method" not in message else None
                if future is not None and not future.done():
                    future.set_result(message)
                else:
                    logger.debug(f"Unhandled message from '{self.name}': {line.strip()}")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(
                        ConnectionError(f"Server '{self.name}' closed connection")
                    )

    async def disconnect(self) -> None:
        process, self._process = self._process, None
        reader_task, self._reader_task = self._reader_task, None

        if process is not None:
            await terminate_process(process, self.name, self._grace_period, close_stdin=True)

        if reader_task is not None:
            reader_task.cancel()
            try:
                await reader_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Reader for server '{self.name}' ended with error: {e}")

        self.server_info = {}
        self.server_capabilities = {}
        logger.debug(f"Disconnected from server '{self.name}'")


def stdio_adapter_factory(
    request_timeout: float = 30.0, grace_period: float = 3.0
) -> AdapterFactory:
    def factory(definition: ServerDefinition) -> IntegrationAdapter:
        return StdioIntegrationAdapter(
            definition, request_timeout=request_timeout, grace_period=grace_period
        )

    return factory
