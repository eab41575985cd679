from __future__ import annotations

import json
from typing import Any

from calliope_proxy.tools.mcp_client import ToolCallError, ToolClientRegistry

CONVERT_TO_MARKDOWN_TOOL = "convert_to_markdown"


class MarkdownConverter:
    def __init__(self, registry: ToolClientRegistry, service_url: str) -> None:
        self.registry = registry
        self.service_url = service_url

    async def convert(self, html: str) -> str:
        client = self.registry.get(self.service_url)
        result: Any = await client.call_tool(CONVERT_TO_MARKDOWN_TOOL, {"html": html})
        if result is None:
            raise ToolCallError(f"Tool '{CONVERT_TO_MARKDOWN_TOOL}' returned no content")
        if isinstance(result, str):
            return result
        return json.dumps(result)
