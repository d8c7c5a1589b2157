"""
Built-in tool-server configurations.
"""

from typing import Optional, TYPE_CHECKING

from ..types import ServerConfig

if TYPE_CHECKING:
    from ..config import AgentConfig

PLAYWRIGHT_SERVER = "playwright"


def playwright_server_config(
    command: str = "npx",
    args: Optional[list[str]] = None,
    headless: bool = True,
    viewport: Optional[str] = "1280,800",
) -> ServerConfig:
    """Launch configuration for the Playwright MCP server.

    Args:
        command: Executable to run
        args: Base arguments (package spec); flags are appended
        headless: Pass --headless
        viewport: "W,H" passed as --viewport-size, or None

    Returns:
        ServerConfig named "playwright"
    """
    launch_args = list(args) if args is not None else ["@playwright/mcp@latest"]
    if headless and "--headless" not in launch_args:
        launch_args.append("--headless")
    if viewport and "--viewport-size" not in launch_args:
        launch_args.extend(["--viewport-size", viewport])
    return ServerConfig(
        name=PLAYWRIGHT_SERVER,
        command=command,
        args=tuple(launch_args),
        description="Playwright browser automation over MCP stdio",
    )


def default_servers(config: "AgentConfig") -> list[ServerConfig]:
    """Server configurations registered at startup."""
    return [
        playwright_server_config(
            command=config.mcp_command,
            args=config.mcp_args,
            headless=config.headless,
            viewport=config.viewport,
        ),
    ]
