"""
MCP stdio transport, tool facade and page-context bridge.
"""

from .manager import MCPManager
from .playwright import PlaywrightTools
from .bridge import PageContextBridge

__all__ = ["MCPManager", "PlaywrightTools", "PageContextBridge"]
