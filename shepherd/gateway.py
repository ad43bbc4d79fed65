"""Protocol Gateway: the agent-side stdio adapter.

The agent runtime spawns this module as a separate process and talks
line-delimited JSON-RPC 2.0 to it. Tools are declared on a FastMCP server, so
the input schema advertised by ``tools/list`` is generated from the very
signature that validates ``tools/call`` arguments. Each tool forwards to
exactly one Bridge route; the Gateway keeps no state of its own and can be
killed and respawned at any time.
"""

from __future__ import annotations

import json
import logging
import sys
from enum import Enum
from io import TextIOWrapper
from pathlib import Path
from typing import Any, AsyncIterable, Awaitable, Callable, Dict, List, Literal, Optional, Union
from urllib.parse import quote

import anyio
import httpx
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    Implementation,
    InitializeResult,
    ServerCapabilities,
    TextContent,
    ToolsCapability,
)

from . import __version__
from .errors import BridgeError, BridgeUnavailableError, ShepherdError
from .handshake import wait_for_port

logger = logging.getLogger("shepherd.gateway")

SERVER_NAME = "shepherd"
BRIDGE_HOST = "127.0.0.1"
REQUEST_TIMEOUT = 30.0

TaskStatusValue = Literal["todo", "in-progress", "ready-for-signoff", "done", "rework"]
TaskTypeValue = Literal["task", "bug"]


class BridgeRoute(Enum):
    """Every Bridge endpoint the Gateway may call, as (method, path template)."""

    LIST_TASKS = ("GET", "/tasks")
    NEXT_TASK = ("GET", "/tasks/next")
    GET_TASK = ("GET", "/tasks/{task_id}")
    UPDATE_TASK_STATUS = ("PATCH", "/tasks/{task_id}/status")
    CREATE_TASK = ("POST", "/tasks")
    GET_TASK_REQUIREMENT = ("GET", "/tasks/{task_id}/requirement")
    LIST_FEATURES = ("GET", "/features")
    GET_FEATURE = ("GET", "/features/{feature_id}")
    LIST_REQUIREMENTS = ("GET", "/requirements")
    GET_REQUIREMENTS_PATH = ("GET", "/requirements/path")
    CREATE_REQUIREMENT = ("POST", "/requirements")
    COMPLETE_INTERVIEW = ("POST", "/interview/complete")

    @property
    def method(self) -> str:
        return self.value[0]

    def path(self, **params: str) -> str:
        return self.value[1].format(**{key: quote(str(value), safe="") for key, value in params.items()})


class BridgeClient:
    """Calls the Bridge over loopback HTTP, re-resolving its port on every call."""

    def __init__(
        self,
        port_path: Path,
        *,
        port_timeout: Optional[float] = None,
        request_timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.port_path = Path(port_path)
        self.port_timeout = port_timeout
        self.request_timeout = request_timeout
        self._transport = transport

    async def call(
        self,
        route: BridgeRoute,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        **path_params: str,
    ) -> Any:
        """Perform one request; no retries beyond waiting for the port file."""
        port = await wait_for_port(self.port_path, self.port_timeout)
        url = f"http://{BRIDGE_HOST}:{port}{route.path(**path_params)}"
        query = {key: value for key, value in (params or {}).items() if value is not None}

        async with httpx.AsyncClient(transport=self._transport, timeout=self.request_timeout) as client:
            try:
                response = await client.request(route.method, url, params=query or None, json=body)
            except httpx.TransportError as e:
                raise BridgeUnavailableError(f"Bridge unavailable at {url}: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        if not response.is_success:
            logger.info(f"{route.method} {url} -> {response.status_code}")
            raise BridgeError(response.status_code, payload)
        return payload


def create_gateway(client: BridgeClient) -> FastMCP:
    """Declare the agent-facing tools, each bound to one Bridge route."""

    mcp = FastMCP(SERVER_NAME)

    @mcp.tool()
    async def list_tasks(
        limit: Optional[int] = None,
        status: Optional[TaskStatusValue] = None,
        feature_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """List tasks sorted by priority. Use limit=1 and status=todo to get the next task to work on."""
        return await client.call(
            BridgeRoute.LIST_TASKS,
            params={"limit": limit, "status": status, "feature_id": feature_id},
        )

    @mcp.tool()
    async def get_task(task_id: str) -> Dict[str, Any]:
        """Get a task by ID."""
        return await client.call(BridgeRoute.GET_TASK, task_id=task_id)

    @mcp.tool()
    async def update_task_status(task_id: str, status: TaskStatusValue) -> Dict[str, Any]:
        """Update task status. todo=not started, in-progress=working, ready-for-signoff=complete awaiting
        review, done=approved, rework=needs changes. Use ready-for-signoff when work is complete
        (the operator reviews it and marks it done)."""
        return await client.call(BridgeRoute.UPDATE_TASK_STATUS, body={"status": status}, task_id=task_id)

    @mcp.tool()
    async def create_task(
        title: str,
        description: Optional[str] = None,
        requirement_path: Optional[str] = None,
        feature_id: Optional[str] = None,
        task_type: TaskTypeValue = "task",
    ) -> Dict[str, Any]:
        """Create a new task at the end of the queue. Omit feature_id (or pass 'none') for a quick task."""
        return await client.call(
            BridgeRoute.CREATE_TASK,
            body={
                "title": title,
                "description": description,
                "requirementPath": requirement_path,
                "feature_id": feature_id,
                "type": task_type,
            },
        )

    @mcp.tool()
    async def list_features() -> Dict[str, Any]:
        """List all features with their task IDs."""
        return await client.call(BridgeRoute.LIST_FEATURES)

    @mcp.tool()
    async def get_feature(feature_id: str) -> Dict[str, Any]:
        """Get a feature by ID."""
        return await client.call(BridgeRoute.GET_FEATURE, feature_id=feature_id)

    @mcp.tool()
    async def list_requirements() -> Dict[str, Any]:
        """List all requirement files."""
        return await client.call(BridgeRoute.LIST_REQUIREMENTS)

    @mcp.tool()
    async def get_requirements_path() -> Dict[str, Any]:
        """Get the requirements folder path."""
        return await client.call(BridgeRoute.GET_REQUIREMENTS_PATH)

    @mcp.tool()
    async def get_task_requirement(task_id: str) -> Dict[str, Any]:
        """Get the requirement path for a task (its own, or its feature's)."""
        return await client.call(BridgeRoute.GET_TASK_REQUIREMENT, task_id=task_id)

    @mcp.tool()
    async def create_requirement(path: str, content: str) -> Dict[str, Any]:
        """Create or overwrite a requirement file at a workspace-relative path."""
        return await client.call(BridgeRoute.CREATE_REQUIREMENT, body={"path": path, "content": content})

    @mcp.tool()
    async def complete_interview(
        requirement_path: Optional[str] = None,
        task_ids: Optional[List[str]] = None,
        proposal: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Signal interview completion. Pass the accepted proposal to apply it as one atomic batch."""
        return await client.call(
            BridgeRoute.COMPLETE_INTERVIEW,
            body={"requirement_path": requirement_path, "task_ids": task_ids or [], "proposal": proposal},
        )

    return mcp


# ------------------------------------------------------------------
# JSON-RPC over stdio
# ------------------------------------------------------------------


class RpcMethod(str, Enum):
    """The closed set of JSON-RPC methods the Gateway understands."""

    INITIALIZE = "initialize"
    INITIALIZED = "notifications/initialized"
    PING = "ping"
    LIST_TOOLS = "tools/list"
    CALL_TOOL = "tools/call"


def _rpc_result(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _rpc_error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _tool_error(error: Dict[str, Any]) -> Dict[str, Any]:
    text = json.dumps({"error": error})
    return {"content": [{"type": "text", "text": text}], "isError": True}


class StdioGateway:
    """Dispatch line-delimited JSON-RPC messages to the FastMCP tool registry."""

    def __init__(self, server: FastMCP):
        self.server = server

    async def handle_line(self, line: Union[str, bytes]) -> Optional[Dict[str, Any]]:
        """Handle one input line; returns the response, or None when there is none."""
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError as e:
                logger.error(f"Ignoring line that is not valid UTF-8 ({e}): {line[:200]!r}")
                return None
        line = line.strip()
        if not line:
            return None
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            logger.error(f"Ignoring unparsable line ({e}): {line[:200]}")
            return None
        if not isinstance(message, dict) or message.get("jsonrpc") != "2.0" or not isinstance(message.get("method"), str):
            logger.error(f"Ignoring line that is not a JSON-RPC 2.0 request: {line[:200]}")
            return None

        try:
            return await self.handle_message(message)
        except Exception as e:
            logger.error(f"Unhandled error for {message.get('method')}: {e}", exc_info=True)
            if "id" in message:
                return _rpc_error(message["id"], INTERNAL_ERROR, f"Internal error: {e}")
            return None

    async def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        method_name = message["method"]
        is_notification = "id" not in message
        request_id = message.get("id")

        try:
            method = RpcMethod(method_name)
        except ValueError:
            if is_notification:
                logger.debug(f"Ignoring notification {method_name}")
                return None
            return _rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method_name}")

        if is_notification:
            return None
        if method is RpcMethod.INITIALIZED:
            # A notification sent with an id still gets no answer
            return None

        params = message.get("params") or {}
        if not isinstance(params, dict):
            return _rpc_error(request_id, INVALID_PARAMS, "params must be an object")

        if method is RpcMethod.INITIALIZE:
            return _rpc_result(request_id, self._initialize(params))
        if method is RpcMethod.PING:
            return _rpc_result(request_id, {})
        if method is RpcMethod.LIST_TOOLS:
            return _rpc_result(request_id, await self._list_tools())
        if method is RpcMethod.CALL_TOOL:
            name = params.get("name")
            arguments = params.get("arguments") or {}
            if not isinstance(name, str) or not isinstance(arguments, dict):
                return _rpc_error(request_id, INVALID_PARAMS, "tools/call needs a string 'name' and object 'arguments'")
            if name not in await self._tool_names():
                logger.info(f"Unknown tool requested: {name}")
                return _rpc_result(request_id, _tool_error({"kind": "unknown_tool", "message": f"Unknown tool: {name}"}))
            return _rpc_result(request_id, await self._call_tool(name, arguments))
        return _rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method_name}")

    def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        requested = params.get("protocolVersion")
        result = InitializeResult(
            protocolVersion=requested if isinstance(requested, str) and requested else LATEST_PROTOCOL_VERSION,
            capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
            serverInfo=Implementation(name=SERVER_NAME, version=__version__),
        )
        return result.model_dump(by_alias=True, exclude_none=True, mode="json")

    async def _tool_names(self) -> List[str]:
        return [tool.name for tool in await self.server.list_tools()]

    async def _list_tools(self) -> Dict[str, Any]:
        tools = await self.server.list_tools()
        return {"tools": [tool.model_dump(by_alias=True, exclude_none=True, mode="json") for tool in tools]}

    async def _call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = await self.server.call_tool(name, arguments)
        except ToolError as e:
            cause = e.__cause__
            if isinstance(cause, ShepherdError):
                logger.info(f"Tool {name} failed ({cause.kind}): {cause}")
                return _tool_error(cause.to_dict())
            logger.info(f"Tool {name} rejected arguments: {e}")
            return _tool_error({"kind": "invalid_arguments", "message": str(e)})

        if isinstance(result, tuple) and len(result) == 2:
            content, structured = result
        elif isinstance(result, dict):
            content, structured = [TextContent(type="text", text=json.dumps(result))], result
        else:
            content, structured = result, None

        payload: Dict[str, Any] = {
            "content": [block.model_dump(by_alias=True, exclude_none=True, mode="json") for block in content],
            "isError": False,
        }
        if structured is not None:
            payload["structuredContent"] = structured
        return payload

    async def serve(
        self,
        lines: AsyncIterable[Union[str, bytes]],
        write: Callable[[str], Awaitable[None]],
    ) -> None:
        """Answer every line from ``lines`` until input ends.

        Lines are handled concurrently, so a tool call waiting for the Bridge
        does not hold up ``ping`` or ``tools/list``.
        """
        write_lock = anyio.Lock()

        async def respond(line: Union[str, bytes]) -> None:
            response = await self.handle_line(line)
            if response is None:
                return
            async with write_lock:
                await write(json.dumps(response) + "\n")

        async with anyio.create_task_group() as tg:
            async for line in lines:
                tg.start_soon(respond, line)


async def _serve_stdio(gateway: StdioGateway) -> None:
    # Binary stdin; handle_line decodes each line separately
    stdin = anyio.wrap_file(sys.stdin.buffer)
    stdout = anyio.wrap_file(TextIOWrapper(sys.stdout.buffer, encoding="utf-8"))

    async def write(text: str) -> None:
        await stdout.write(text)
        await stdout.flush()

    await gateway.serve(stdin, write)


def run_gateway(port_path: Path, port_timeout: Optional[float] = None) -> None:
    """Run the Gateway on this process's stdin/stdout until stdin closes."""
    client = BridgeClient(port_path, port_timeout=port_timeout)
    gateway = StdioGateway(create_gateway(client))
    logger.info(f"Gateway started; bridge port file is {port_path}")
    anyio.run(_serve_stdio, gateway)
    logger.info("Gateway input closed; exiting")
