"""
Logging and artifact management for WebPilot.

Handles JSONL step logging, screenshot saving, the run summary file and
rich console output.
"""

import base64
import binascii
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .config import get_runs_dir
from .types import AgentStep, ExecutionSummary, LoopDetection, MCPAction

logger = logging.getLogger(__name__)


def slugify(text: str, max_length: int = 30) -> str:
    """Convert text to a filesystem-safe slug."""
    slug = re.sub(r'[^\w\s-]', '', text.lower())
    slug = re.sub(r'[-\s]+', '_', slug).strip('_')
    return slug[:max_length]


def redact_action(action: dict[str, Any]) -> dict[str, Any]:
    """Hide values typed into password-looking fields."""
    if action.get("type") == "fill":
        target = f"{action.get('selector', '')} {action.get('description', '')}".lower()
        if "password" in target or "passwd" in target:
            action = dict(action)
            action["value"] = "[REDACTED]"
    return action


PHASE_STYLES = {
    "exploration": "cyan",
    "focused": "green",
    "completion": "magenta",
    "recovery": "yellow",
}


class RunLogger:
    """Manages logging and artifacts for a single execution."""

    def __init__(self, goal: str, enable_console: bool = True,
                 runs_dir: Optional[Path] = None, persist: bool = True):
        """Initialize the run logger.

        Args:
            goal: The goal being executed (used for directory naming)
            enable_console: Whether to print to console
            runs_dir: Parent directory for run folders (defaults to ~/.webpilot/runs)
            persist: Whether to write artifacts at all (console output only when False)
        """
        self.goal = goal
        self.console = Console() if enable_console else None
        self.persist = persist
        self.step_count = 0

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_dir = (runs_dir or get_runs_dir()) / f"{timestamp}_{slugify(goal)}"
        self.screenshots_dir = self.run_dir / "screenshots"
        self.steps_file = self.run_dir / "steps.jsonl"
        self.summary_file = self.run_dir / "summary.json"

        if persist:
            self.screenshots_dir.mkdir(parents=True, exist_ok=True)
            self.steps_file.touch()

    def log_step(self, step: AgentStep) -> None:
        """Append one step to steps.jsonl, saving its screenshot separately."""
        self.step_count += 1
        if not self.persist:
            return
        data = step.to_dict(include_screenshot=False)
        data["step"] = self.step_count
        data["action"] = redact_action(data["action"])

        if step.result.screenshot:
            path = self.save_screenshot(step.result.screenshot, step.action.type)
            if path is not None:
                data["result"]["screenshot"] = str(path.relative_to(self.run_dir))

        with open(self.steps_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(data, default=str) + "\n")

    def save_screenshot(self, image_b64: str, label: Optional[str] = None) -> Optional[Path]:
        """Decode and save a base64 screenshot.

        Returns:
            Path to the saved file, or None if the payload was not base64
        """
        try:
            image = base64.b64decode(image_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.debug(f"Skipping screenshot that is not valid base64: {e}")
            return None
        # PNG starts with \x89PNG; everything else from the tool server is JPEG
        extension = "png" if image[:4] == b"\x89PNG" else "jpg"
        label_part = f"_{slugify(label)}" if label else ""
        path = self.screenshots_dir / f"step_{self.step_count:03d}{label_part}.{extension}"
        path.write_bytes(image)
        return path

    def write_summary(self, summary: ExecutionSummary) -> Optional[Path]:
        if not self.persist:
            return None
        self.summary_file.write_text(json.dumps(summary.to_dict(), indent=2), encoding="utf-8")
        return self.summary_file

    def print_header(self, target_url: str = "") -> None:
        if not self.console:
            return
        body = f"[bold cyan]Goal:[/bold cyan] {self.goal}"
        if target_url:
            body += f"\n[bold cyan]Target:[/bold cyan] {target_url}"
        self.console.print()
        self.console.print(Panel(body, title="WebPilot", border_style="cyan"))
        self.console.print()

    def print_step(self, step: AgentStep) -> None:
        """Print a step with its outcome, confidence and phase."""
        if not self.console:
            return

        snapshot = step.context
        phase_style = PHASE_STYLES.get(snapshot.phase, "white")

        line = Text()
        line.append(f"Step {self.step_count}: ", style="bold")
        line.append(step.action.type, style="bold cyan")
        target = step.action.target()
        if target and step.action.type != "fill":
            line.append(f"({target})", style="dim")
        self.console.print(line)
        self.console.print(f"  [dim]{step.description}[/dim]")

        if step.success:
            self.console.print(f"  [green]OK[/green] in {step.duration:.0f}ms", end="")
        else:
            self.console.print(f"  [red]FAILED[/red] {step.result.error or ''}", end="")
        self.console.print(
            f"  [dim]confidence[/dim] {snapshot.confidence:.0f}%"
            f"  [dim]phase[/dim] [{phase_style}]{snapshot.phase}[/{phase_style}]"
        )

    def print_loop(self, detection: LoopDetection, forced: MCPAction) -> None:
        if not self.console:
            return
        self.console.print(
            f"  [bold yellow]Loop detected[/bold yellow] {detection.pattern} "
            f"({detection.severity}) -> forcing {forced.type}"
        )

    def print_error(self, error: str) -> None:
        if not self.console:
            return
        self.console.print(f"  [bold red]Error:[/bold red] {error}")

    def print_summary(self, summary: ExecutionSummary) -> None:
        if not self.console:
            return

        status_style = "green" if summary.status == "success" else "red"
        table = Table(title="Run Summary", show_header=False)
        table.add_column("Property", style="dim")
        table.add_column("Value")

        table.add_row("Status", f"[{status_style}]{summary.status}[/{status_style}]")
        table.add_row("Steps", f"{summary.total_steps} ({summary.succeeded_steps} ok, {summary.failed_steps} failed)")
        table.add_row("Final Phase", summary.final_phase)
        table.add_row("Final Confidence", f"{summary.final_confidence:.0f}%")
        table.add_row("Loops Detected", str(summary.loops_detected))
        table.add_row("Elapsed", f"{summary.elapsed_seconds:.1f}s")
        if summary.error:
            table.add_row("Error", summary.error)
        if self.persist:
            table.add_row("Logs Directory", str(self.run_dir))

        self.console.print()
        self.console.print(table)
