#!/usr/bin/env python3
"""
Code Runner Admin CLI - operator dashboard.

Usage:
  python scripts/admin_cli.py              # Interactive mode
  python scripts/admin_cli.py stats        # One-shot statistics
  python scripts/admin_cli.py sessions     # List live sessions
  python scripts/admin_cli.py watch        # Auto-refresh dashboard

Talks to a running server's admin endpoints with the master API key
(MASTER_API_KEY, read from the environment or .env).
"""

import argparse
import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

# Load .env file if it exists
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")

import httpx
from rich import box
from rich.columns import Columns
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

console = Console()


# ============================================================================
# API Client
# ============================================================================

class AdminClient:
    """Thin wrapper over the admin endpoints."""

    def __init__(self, base_url: str, master_key: str, timeout: float = 10.0):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"x-api-key": master_key},
            timeout=timeout,
        )

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        response = self._client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    def stats(self) -> Dict[str, Any]:
        return self._get("/api/v1/admin/stats")

    def sessions(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"kind": kind} if kind else None
        return self._get("/api/v1/admin/sessions", params=params)

    def close(self) -> None:
        self._client.close()


def get_client(base_url: str) -> AdminClient:
    master_key = os.environ.get("MASTER_API_KEY")
    if not master_key:
        console.print("[red]Error:[/red] MASTER_API_KEY is not set.")
        sys.exit(1)
    return AdminClient(base_url, master_key)


# ============================================================================
# Formatting Helpers
# ============================================================================

def format_seconds(seconds: float) -> str:
    """Format seconds to human readable."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    else:
        return f"{seconds / 3600:.1f}h"


def format_usage(used: int, limit: int) -> Text:
    """Color a used/limit pair by how close it is to the limit."""
    text = f"{used}/{limit}"
    ratio = used / limit if limit else 0
    if ratio >= 0.9:
        return Text(text, style="red")
    elif ratio >= 0.6:
        return Text(text, style="yellow")
    return Text(text, style="green")


# ============================================================================
# Panels
# ============================================================================

def build_registry_panel(stats: Dict[str, Any]) -> Panel:
    registry = stats["registry"]
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Live Sessions", str(registry["total_sessions"]))
    for kind, count in sorted(registry["by_kind"].items()):
        table.add_row(f"  {kind.capitalize()}", str(count))
    table.add_row("Sweeps Run", str(registry["sweeps_run"]))
    table.add_row("Sessions Swept", str(registry["sessions_swept"]))

    return Panel(table, title="[bold]Session Registry[/bold]", border_style="blue")


def build_terminal_panel(stats: Dict[str, Any]) -> Panel:
    terminals = stats["terminals"]
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")

    table.add_row(
        "Sessions",
        format_usage(terminals["total_sessions"], terminals["max_sessions"]),
    )
    table.add_row("Active", str(terminals["active_sessions"]))
    blocked = terminals["total_blocked_commands"]
    table.add_row(
        "Blocked Commands", Text(str(blocked), style="red" if blocked else "green")
    )
    table.add_row("Suspicious Activity", str(terminals["total_suspicious_activity"]))

    return Panel(table, title="[bold]Terminals[/bold]", border_style="green")


def build_scheduler_panel(stats: Dict[str, Any]) -> Panel:
    scheduler = stats["scheduler"]
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")

    table.add_row(
        "Running", format_usage(scheduler["running"], scheduler["max_concurrent"])
    )
    table.add_row("Users Active", str(scheduler["users_active"]))
    table.add_row("Per-User Limit", str(scheduler["max_per_user"]))

    return Panel(table, title="[bold]Execution Scheduler[/bold]", border_style="magenta")


def build_sessions_table(sessions: List[Dict[str, Any]]) -> Table:
    table = Table(title="Live Sessions", box=box.ROUNDED)
    table.add_column("Session", style="cyan")
    table.add_column("Kind", justify="center")
    table.add_column("User", style="white")
    table.add_column("Busy", justify="center")
    table.add_column("Age", justify="right")
    table.add_column("Idle", justify="right", style="dim")

    if not sessions:
        table.add_row("[dim]No live sessions[/dim]", "", "", "", "", "")
    for session in sorted(sessions, key=lambda s: s["age_seconds"], reverse=True):
        table.add_row(
            session["session_id"][:12],
            session["kind"],
            session.get("user_id") or "-",
            Text("yes", style="yellow") if session["busy"] else Text("no", style="dim"),
            format_seconds(session["age_seconds"]),
            format_seconds(session["idle_seconds"]),
        )
    return table


def render_dashboard(client: AdminClient) -> None:
    stats = client.stats()
    console.print(
        Columns(
            [
                build_registry_panel(stats),
                build_terminal_panel(stats),
                build_scheduler_panel(stats),
            ],
            equal=True,
            expand=True,
        )
    )


# ============================================================================
# Commands
# ============================================================================

def live_dashboard(client: AdminClient, interval: float = 5.0) -> None:
    """Auto-refresh dashboard."""
    try:
        while True:
            console.clear()
            console.print(Panel.fit(
                "[bold cyan]Code Runner - Live Dashboard[/bold cyan]\n"
                f"[dim]Updated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}[/dim]",
                border_style="cyan"
            ))
            console.print()
            render_dashboard(client)
            console.print()
            console.print(build_sessions_table(client.sessions()))
            console.print(f"[dim]Refreshing in {interval:.0f}s... (Ctrl+C to exit)[/dim]")
            time.sleep(interval)
    except KeyboardInterrupt:
        console.print("\n[yellow]Dashboard stopped.[/yellow]")


def interactive_menu(client: AdminClient) -> None:
    while True:
        console.clear()
        console.print(Panel.fit("[bold cyan]Code Runner Admin[/bold cyan]", border_style="cyan"))
        console.print()
        console.print("[bold]Options:[/bold]")
        console.print("  [cyan]1[/cyan]  Statistics")
        console.print("  [cyan]2[/cyan]  Live sessions")
        console.print("  [cyan]3[/cyan]  Terminal sessions only")
        console.print("  [cyan]4[/cyan]  Live dashboard (auto-refresh)")
        console.print("  [cyan]q[/cyan]  Quit")
        console.print()

        choice = Prompt.ask("Select", choices=["1", "2", "3", "4", "q"], default="1")
        if choice == "q":
            break
        elif choice == "1":
            console.print()
            render_dashboard(client)
        elif choice == "2":
            console.print()
            console.print(build_sessions_table(client.sessions()))
        elif choice == "3":
            console.print()
            console.print(build_sessions_table(client.sessions(kind="terminal")))
        elif choice == "4":
            live_dashboard(client)
            continue

        console.print()
        Prompt.ask("[dim]Press Enter to continue[/dim]", default="")


def main() -> None:
    parser = argparse.ArgumentParser(description="Code Runner admin dashboard")
    parser.add_argument(
        "command",
        nargs="?",
        choices=["stats", "sessions", "watch"],
        help="Run one command instead of the interactive menu",
    )
    parser.add_argument(
        "--url",
        default=os.environ.get("CODERUNNER_URL", "http://localhost:8000"),
        help="Base URL of the code runner API",
    )
    parser.add_argument("--kind", help="Session kind filter for 'sessions'")
    parser.add_argument("--interval", type=float, default=5.0)
    args = parser.parse_args()

    client = get_client(args.url)
    try:
        if args.command == "stats":
            render_dashboard(client)
        elif args.command == "sessions":
            console.print(build_sessions_table(client.sessions(kind=args.kind)))
        elif args.command == "watch":
            live_dashboard(client, interval=args.interval)
        else:
            interactive_menu(client)
    except httpx.HTTPStatusError as e:
        console.print(
            f"[red]Error:[/red] {e.response.status_code} from {e.request.url}: "
            f"{e.response.text}"
        )
        sys.exit(1)
    except httpx.HTTPError as e:
        console.print(f"[red]Error:[/red] Cannot reach {args.url}: {e}")
        sys.exit(1)
    finally:
        client.close()


if __name__ == "__main__":
    main()
