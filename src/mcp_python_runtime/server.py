"""MCP server implementation."""
import asyncio
import json
from typing import Any, Dict, List, Optional

import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.models import InitializationOptions
from mcp.server import stdio

from mcp_python_runtime import __version__
from mcp_python_runtime.config import ManagerConfig
from mcp_python_runtime.errors import log_error
from mcp_python_runtime.logging import configure_logging, get_logger
from mcp_python_runtime.manager import PythonManager
from mcp_python_runtime.runtimes.runtime import root_runtime
from mcp_python_runtime.types import ExecutionResult, InstanceRecord

logger = get_logger("server")

VERSION_PROPERTIES = {
    "version": {"type": "string", "description": "Python version, e.g. 3.12 or 3.12.7"},
    "build_date": {"type": "string", "description": "Release build date (YYYYMMDD or YYYY-MM-DD)"},
}

tools = [
    types.Tool(
        name="python_acquire",
        description="Download and install a standalone Python build, or reuse an installed one",
        inputSchema={"type": "object", "properties": VERSION_PROPERTIES},
    ),
    types.Tool(
        name="python_list_instances",
        description="List installed Python instances",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="python_remove_instance",
        description="Remove an installed Python instance and its virtual environments",
        inputSchema={
            "type": "object",
            "properties": VERSION_PROPERTIES,
            "required": ["version"],
        },
    ),
    types.Tool(
        name="python_available_versions",
        description="List Python versions offered by the latest (or a tagged) release",
        inputSchema={
            "type": "object",
            "properties": {
                "release_tag": {"type": "string", "description": "Release tag, defaults to latest"}
            },
        },
    ),
    types.Tool(
        name="python_execute",
        description="Run Python code or a script with an installed instance or one of its virtual environments",
        inputSchema={
            "type": "object",
            "properties": {
                **VERSION_PROPERTIES,
                "code": {"type": "string", "description": "Code passed to python -c"},
                "script": {"type": "string", "description": "Path of a script to run"},
                "args": {"type": "array", "items": {"type": "string"}},
                "venv": {"type": "string", "description": "Virtual environment name"},
                "timeout": {"type": "number", "description": "Timeout in seconds"},
            },
            "required": ["version"],
        },
    ),
    types.Tool(
        name="python_venv_create",
        description="Create (or reuse) a named virtual environment for an instance",
        inputSchema={
            "type": "object",
            "properties": {
                **VERSION_PROPERTIES,
                "name": {"type": "string", "description": "Virtual environment name"},
                "recreate": {"type": "boolean", "description": "Delete and rebuild if it exists"},
            },
            "required": ["version", "name"],
        },
    ),
    types.Tool(
        name="python_venv_delete",
        description="Delete a named virtual environment",
        inputSchema={
            "type": "object",
            "properties": {
                **VERSION_PROPERTIES,
                "name": {"type": "string", "description": "Virtual environment name"},
            },
            "required": ["version", "name"],
        },
    ),
    types.Tool(
        name="python_venv_list",
        description="List virtual environments of an instance",
        inputSchema={
            "type": "object",
            "properties": VERSION_PROPERTIES,
            "required": ["version"],
        },
    ),
]


def instance_to_dict(record: InstanceRecord) -> Dict[str, Any]:
    return {
        "version": record.version,
        "build_date": record.build_date,
        "was_latest_build": record.was_latest_build,
        "install_date": record.install_date.isoformat(),
        "directory": str(record.directory),
        "sub_environments": [s.name for s in record.sub_environments],
    }


def execution_to_dict(result: ExecutionResult) -> Dict[str, Any]:
    return {"exit_code": result.exit_code, "stdout": result.stdout, "stderr": result.stderr}


async def handle_tool_call(manager: PythonManager, name: str, arguments: Dict[str, Any]) -> Any:
    """Dispatch one tool call and return its JSON-serializable data."""
    version: Optional[str] = arguments.get("version")
    build_date: Optional[str] = arguments.get("build_date")

    match name:
        case "python_acquire":
            record = await manager.acquire(version, build_date)
            return instance_to_dict(record)

        case "python_list_instances":
            return [instance_to_dict(r) for r in manager.list_instances()]

        case "python_remove_instance":
            return {"removed": await manager.remove_instance(version, build_date)}

        case "python_available_versions":
            return await manager.list_available_versions(arguments.get("release_tag"))

        case "python_execute":
            record = manager.require_instance(version, build_date)
            if venv := arguments.get("venv"):
                runtime = manager.environments(record).get(venv)
            else:
                runtime = root_runtime(record, manager.config)
            options = {}
            if arguments.get("timeout") is not None:
                options["timeout"] = float(arguments["timeout"])
            if script := arguments.get("script"):
                result = await runtime.execute_script(script, arguments.get("args", []), **options)
            elif code := arguments.get("code"):
                result = await runtime.execute_command(code, **options)
            else:
                raise ValueError("Either code or script is required")
            return execution_to_dict(result)

        case "python_venv_create":
            record = manager.require_instance(version, build_date)
            runtime = await manager.environments(record).get_or_create(
                arguments["name"], recreate=bool(arguments.get("recreate", False))
            )
            return {"name": arguments["name"], "python": str(runtime.python_path)}

        case "python_venv_delete":
            record = manager.require_instance(version, build_date)
            return {"deleted": await manager.environments(record).delete(arguments["name"])}

        case "python_venv_list":
            record = manager.require_instance(version, build_date)
            return manager.environments(record).list()

    raise ValueError(f"Unknown tool: {name}")


async def tool_response(
    manager: PythonManager, name: str, arguments: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    """Every failure becomes a `success: false` payload for the client."""
    try:
        data = await handle_tool_call(manager, name, arguments or {})
        return {"success": True, "data": data}
    except Exception as e:
        log_error(e, {"tool": name, "arguments": arguments}, logger)
        return {"success": False, "error": str(e)}


async def init_server(manager: Optional[PythonManager] = None) -> Server:
    logger.info(f"Registered tools: {', '.join(t.name for t in tools)}")

    manager = manager or PythonManager(config=ManagerConfig.from_env())
    server = Server("mcp-python-runtime")

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        logger.debug("Tools requested")
        return tools

    @server.call_tool()
    async def call_tool(
        name: str, arguments: Dict[str, Any]
    ) -> list[types.TextContent | types.ImageContent | types.EmbeddedResource]:
        logger.debug(f"Tool call received: {name} with arguments {arguments}")
        payload = await tool_response(manager, name, arguments)
        return [types.TextContent(type="text", text=json.dumps(payload))]

    return server


async def serve() -> None:
    configure_logging()
    logger.info("Starting MCP Python runtime server")
    server = await init_server()
    async with stdio.stdio_server() as (read_stream, write_stream):
        init_options = InitializationOptions(
            server_name="mcp-python-runtime",
            server_version=__version__,
            capabilities=types.ServerCapabilities(
                tools=types.ToolsCapability(listChanged=False),
                logging=types.LoggingCapability(),
            ),
        )
        await server.run(read_stream, write_stream, init_options)


def main() -> None:
    """Run the MCP server."""
    asyncio.run(serve())
