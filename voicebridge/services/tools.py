"""
VoiceBridge - Tool Registry

Tools the model may invoke mid-conversation. Each tool is advertised in the
promptStart `toolConfiguration` and executed when the model closes a TOOL
content block.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from ..core.config import prompt_cfg
from ..core.errors import ToolExecutionError

logger = logging.getLogger("voicebridge.tools")


@dataclass
class Tool:
    """A callable exposed to the model. `handler(args)` may be sync or async."""
    name: str
    description: str
    handler: Callable[[Dict[str, Any]], Any]
    input_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    def to_spec(self) -> Dict[str, Any]:
        return {
            "toolSpec": {
                "name": self.name,
                "description": self.description,
                "inputSchema": {"json": json.dumps(self.input_schema)},
            }
        }


class ToolRegistry:
    """Maps tool name → Tool. Lookups are case-insensitive."""

    def __init__(self, tools: Optional[List[Tool]] = None) -> None:
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name.lower()] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get((name or "").lower())

    def names(self) -> List[str]:
        return [t.name for t in self._tools.values()]

    def specs(self) -> List[Dict[str, Any]]:
        """`toolConfiguration.tools` for promptStart."""
        return [t.to_spec() for t in self._tools.values()]

    async def execute(self, name: str, content: Any = None) -> Any:
        """
        Run a tool with the model-supplied `content` (a JSON string or dict).
        Raises ToolExecutionError on unknown tools, bad arguments or failures.
        """
        tool = self.get(name)
        if tool is None:
            raise ToolExecutionError(f"Unknown tool: {name}", tool_name=name)

        args = _parse_args(name, content)
        try:
            if asyncio.iscoroutinefunction(tool.handler):
                result = await tool.handler(args)
            else:
                # Blocking callouts run off the event loop
                result = await asyncio.get_running_loop().run_in_executor(None, tool.handler, args)
                if asyncio.iscoroutine(result):
                    result = await result
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(f"Tool {tool.name} failed: {e}", tool_name=tool.name) from e

        logger.info(f"Tool {tool.name} executed")
        return result

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None


def _parse_args(name: str, content: Any) -> Dict[str, Any]:
    if content is None or content == "":
        return {}
    if isinstance(content, dict):
        return content
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError) as e:
        raise ToolExecutionError(f"Invalid arguments for {name}: {e}", tool_name=name) from e
    return parsed if isinstance(parsed, dict) else {"value": parsed}


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------

def date_and_time_tool(timezone: str = prompt_cfg.tool_timezone) -> Tool:
    def _handler(_args: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.now(ZoneInfo(timezone))
        return {
            "formattedTime": now.strftime("%I:%M %p"),
            "date": now.strftime("%Y-%m-%d"),
            "year": now.year,
            "month": now.month,
            "day": now.day,
            "dayOfWeek": now.strftime("%A").upper(),
            "timezone": timezone,
        }

    return Tool(
        name="getDateAndTimeTool",
        description="Get information about the current date and time.",
        handler=_handler,
    )


def default_tools() -> ToolRegistry:
    return ToolRegistry([date_and_time_tool()])
