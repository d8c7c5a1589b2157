"""
CLI for WebPilot.

Provides the command-line interface using argparse.
"""

import argparse
import json
import logging
import signal
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .agent import ExecutionOrchestrator
from .config import AgentConfig, DEFAULTS
from .errors import WebPilotError
from .logger import RunLogger
from .mcp.servers import PLAYWRIGHT_SERVER
from .providers import Provider
from .types import TestGoal


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="webpilot",
        description="WebPilot - an adaptive browser test agent driving a Playwright MCP server.",
        epilog="""
Examples:
  # Check that a page loads and shows its heading
  webpilot run "Verify the page shows the Example Domain heading" --url https://example.com

  # Use a local LM Studio model and watch the browser
  webpilot run "Submit the contact form" --url http://localhost:3000 --provider lm_studio --headed

  # Print the tools the browser server offers
  webpilot tools
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"WebPilot {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run a test goal against a URL",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    run_parser.add_argument(
        "goal",
        type=str,
        help="The test goal in natural language",
    )

    run_parser.add_argument(
        "--url",
        type=str,
        required=True,
        help="Target URL the test starts from",
    )

    run_parser.add_argument(
        "--provider",
        type=str,
        default=None,
        choices=[p.value for p in Provider],
        help=f"LLM provider (default: {DEFAULTS['provider']})",
    )

    run_parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="LLM model name (default: the provider's default model)",
    )

    run_parser.add_argument(
        "--max-steps",
        type=int,
        default=DEFAULTS["max_steps"],
        help=f"Maximum steps to execute (default: {DEFAULTS['max_steps']})",
    )

    run_parser.add_argument(
        "--headed",
        action="store_true",
        default=False,
        help="Show the browser window",
    )

    run_parser.add_argument(
        "--no-log",
        action="store_true",
        default=False,
        help="Do not write steps.jsonl and summary.json",
    )

    run_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Print the summary as JSON instead of the step-by-step view",
    )

    run_parser.add_argument(
        "-d", "--debug",
        action="store_true",
        default=False,
        help="Enable debug mode: verbose logging of agent and transport",
    )

    subparsers.add_parser(
        "health",
        help="Start the browser server and report whether it responds",
    )

    subparsers.add_parser(
        "tools",
        help="List the tools the browser server exposes",
    )

    subparsers.add_parser(
        "servers",
        help="Show the configured tool servers",
    )

    return parser


def setup_logging(debug: bool = False, quiet: bool = False) -> None:
    level = logging.DEBUG if debug else logging.WARNING
    if quiet and not debug:
        level = logging.ERROR
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=debug, show_path=debug)],
    )


def run_command(args: argparse.Namespace) -> int:
    """Execute the run command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    console = Console()
    setup_logging(args.debug, quiet=args.json)

    config = AgentConfig.from_cli_args(
        provider=args.provider,
        model=args.model,
        max_steps=args.max_steps,
        headless=False if args.headed else None,
        debug=args.debug,
        log_runs=not args.no_log,
    )
    config.ensure_directories()

    goal = TestGoal(
        description=args.goal,
        target_url=args.url,
        llm_provider=config.provider or DEFAULTS["provider"],
        model=config.model,
    )

    def run_logger_factory(test_goal: TestGoal) -> Optional[RunLogger]:
        if args.json and not config.log_runs:
            return None
        return RunLogger(test_goal.description, enable_console=not args.json,
                         persist=config.log_runs)

    orchestrator = ExecutionOrchestrator(config, run_logger_factory=run_logger_factory)

    def handle_sigterm(signum, frame):
        logging.getLogger(__name__).warning(f"Received signal {signum}, stopping...")
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, handle_sigterm)

    try:
        summary = orchestrator.run(goal)
    except KeyboardInterrupt:
        for execution_id in orchestrator.active_executions():
            orchestrator.stop(execution_id)
        if not args.json:
            console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    except WebPilotError as e:
        if args.json:
            print(json.dumps({"success": False, "error": str(e)}))
        else:
            console.print(f"[bold red]Error: {e}[/bold red]")
        return 1
    finally:
        orchestrator.shutdown()

    if args.json:
        print(json.dumps(summary.to_dict()))
    return 0 if summary.status == "success" else 1


def health_command() -> int:
    console = Console()
    setup_logging()
    config = AgentConfig()
    with ExecutionOrchestrator(config) as orchestrator:
        health = orchestrator.health()
    style = "green" if health["healthy"] else "red"
    console.print(f"[{style}]{health['message']}[/{style}]")
    return 0 if health["healthy"] else 1


def tools_command() -> int:
    console = Console()
    setup_logging()
    config = AgentConfig()
    try:
        with ExecutionOrchestrator(config) as orchestrator:
            tools = orchestrator.tools.list_tools()
    except WebPilotError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        return 1

    table = Table(title=f"Tools on '{PLAYWRIGHT_SERVER}'")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    for tool in tools:
        description = (tool.get("description") or "").strip().splitlines()
        table.add_row(tool.get("name", "?"), description[0] if description else "")
    console.print(table)
    return 0


def servers_command() -> int:
    console = Console()
    config = AgentConfig()
    orchestrator = ExecutionOrchestrator(config)

    table = Table(title="Tool Servers")
    table.add_column("Name", style="cyan")
    table.add_column("Command")
    table.add_column("Description", style="dim")
    for server in orchestrator.manager.get_registered_servers():
        table.add_row(server.name, " ".join([server.command, *server.args]), server.description)
    console.print(table)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command line arguments (uses sys.argv if None)

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "run":
        return run_command(args)
    if args.command == "health":
        return health_command()
    if args.command == "tools":
        return tools_command()
    if args.command == "servers":
        return servers_command()

    parser.print_help()
    return 1
