"""MCP Server for Setting Forge."""
import asyncio
import json
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from setting_forge.db import init_db
from setting_forge.errors import SettingForgeError
from setting_forge.models import EventType
from setting_forge.services.generation_service import generation_service
from setting_forge.services.modification import render_tree


# Create MCP server
server = Server("setting-forge")


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return [
        Tool(
            name="generate_settings",
            description="Generate a world-building setting tree (characters, locations, factions, power systems...) for a story idea. Waits until generation finishes and returns the tree.",
            inputSchema={
                "type": "object",
                "properties": {
                    "prompt": {
                        "type": "string",
                        "description": "The story idea (e.g., 'A cultivation world where spirit roots can be traded')",
                    },
                    "strategy_id": {
                        "type": "string",
                        "description": "Generation strategy",
                        "enum": ["default", "cultivation", "mystery"],
                    },
                    "hybrid": {
                        "type": "boolean",
                        "description": "Stream free text and extract nodes incrementally (default) instead of the tool loop.",
                        "default": True,
                    },
                    "user_id": {
                        "type": "string",
                        "default": "mcp",
                    },
                },
                "required": ["prompt"],
            },
        ),
        Tool(
            name="get_generation_status",
            description="Check the status and progress of a setting generation session.",
            inputSchema={
                "type": "object",
                "properties": {
                    "session_id": {
                        "type": "string",
                        "description": "The session ID returned from generate_settings",
                    },
                },
                "required": ["session_id"],
            },
        ),
        Tool(
            name="get_setting_tree",
            description="Return the current setting tree of a session as an outline plus node list.",
            inputSchema={
                "type": "object",
                "properties": {
                    "session_id": {"type": "string"},
                },
                "required": ["session_id"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    try:
        if name == "generate_settings":
            return await handle_generate_settings(arguments)
        elif name == "get_generation_status":
            return await handle_get_status(arguments)
        elif name == "get_setting_tree":
            return await handle_get_tree(arguments)
        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]
    except SettingForgeError as e:
        return [TextContent(type="text", text=f"Error: {e}")]


async def handle_generate_settings(arguments: dict) -> list[TextContent]:
    """Handle generate_settings tool call."""
    prompt = arguments.get("prompt", "")
    if not prompt:
        return [TextContent(type="text", text="Error: prompt is required")]

    user_id = arguments.get("user_id") or "mcp"
    strategy_id = arguments.get("strategy_id")
    if arguments.get("hybrid", True):
        session = await generation_service.start_hybrid(user_id=user_id, prompt=prompt, strategy_id=strategy_id)
    else:
        session = await generation_service.start(user_id=user_id, prompt=prompt, strategy_id=strategy_id)

    # The generation stream ends when the session completes, fails or is cancelled
    errors = []
    async for event in generation_service.stream(session.session_id):
        if event.event_type == EventType.GENERATION_ERROR:
            errors.append(event.error_message)

    result = {
        "session_id": session.session_id,
        "status": session.status.value,
        "total_nodes": len(session.nodes),
        "tree": render_tree(session),
        "errors": errors,
    }
    return [TextContent(type="text", text=json.dumps(result, indent=2, ensure_ascii=False))]


async def handle_get_status(arguments: dict) -> list[TextContent]:
    """Handle get_generation_status tool call."""
    session_id = arguments.get("session_id", "")
    if not session_id:
        return [TextContent(type="text", text="Error: session_id is required")]

    progress = generation_service.status(session_id)
    return [TextContent(type="text", text=progress.model_dump_json(indent=2))]


async def handle_get_tree(arguments: dict) -> list[TextContent]:
    """Handle get_setting_tree tool call."""
    session_id = arguments.get("session_id", "")
    if not session_id:
        return [TextContent(type="text", text="Error: session_id is required")]

    session = generation_service.get_session(session_id)
    result = {
        "session_id": session_id,
        "outline": render_tree(session),
        "root_node_ids": session.root_node_ids,
        "nodes": [node.model_dump(mode="json") for node in session.nodes.values()],
    }
    return [TextContent(type="text", text=json.dumps(result, indent=2, ensure_ascii=False))]


async def main():
    """Run the MCP server."""
    init_db()
    generation_service.router.load_defaults()
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


if __name__ == "__main__":
    asyncio.run(main())
