"""
Rich terminal UI components.
Core modules never print; the CLI renders their results through these helpers.
"""
import sys
from contextlib import contextmanager
from typing import Dict, Generator, List, Sequence, Tuple

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.status import Status
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from .models import HealthReport, RestorePlan, RestoreResult, ServiceRestoreOutcome, Snapshot
from .utils import human_size

# Detect ASCII fallback
try:
    "📦".encode(sys.stdout.encoding if sys.stdout and sys.stdout.encoding else "utf-8")
    HAS_UNICODE = True
except (UnicodeEncodeError, LookupError):
    HAS_UNICODE = False

ICONS: Dict[str, str] = {
    "snapshot": "📦",
    "restore": "♻️",
    "verify": "🧪",
    "success": "✅",
    "error": "❌",
    "warn": "⚠️",
    "info": "ℹ️",
    "health": "🩺",
    "schedule": "⏱️",
    "plugin": "🧩",
    "manifest": "📜",
    "delete": "🗑️",
}

ASCII_ICONS: Dict[str, str] = {
    "snapshot": "[PK]",
    "restore": "[RST]",
    "verify": "[CHK]",
    "success": "[OK]",
    "error": "[ERR]",
    "warn": "[WARN]",
    "info": "[INF]",
    "health": "[HLT]",
    "schedule": "[SCH]",
    "plugin": "[PLG]",
    "manifest": "[MNF]",
    "delete": "[DEL]",
}

STATUS_STYLES: Dict[str, Tuple[str, str]] = {
    "pass": ("PASS", "bold green"),
    "warn": ("WARN", "bold yellow"),
    "fail": ("FAIL", "bold red"),
    "info": ("INFO", "bold blue"),
    "restored": ("RESTORED", "bold green"),
    "failed": ("FAILED", "bold red"),
    "skipped": ("SKIPPED", "dim"),
    "planned": ("PLANNED", "bold cyan"),
}

def icon(name: str) -> str:
    return ICONS.get(name, "") if HAS_UNICODE else ASCII_ICONS.get(name, "")

console = Console(width=120)
err_console = Console(stderr=True, width=120)

def _box() -> box.Box:
    return box.ROUNDED if HAS_UNICODE else box.ASCII

def status_label(status: str) -> str:
    label, style = STATUS_STYLES.get(status, (status.upper(), "white"))
    return f"[{style}]{label}[/]"

def render_banner(version: str) -> None:
    """Render the compact homestack header."""
    banner_text = Text("HOMESTACK", style="bold color(39)")
    banner_text.append(f" v{version}", style="dim")
    banner_text.append("\nconfiguration snapshots & stack health", style="dim magenta")
    console.print(Panel(banner_text, border_style="cyan", expand=False))

def render_status(action: str, message: str, style: str = "white") -> None:
    """Print a single line status update."""
    i = icon(action)
    console.print(f"{i} [{style}]{message}[/]")

def render_error(message: str) -> None:
    """Print a styled error panel."""
    i = icon("error")
    err_console.print()
    err_console.print(Panel(Text(message, style="red"), border_style="red", expand=False, title=f"{i} ERROR"))

def render_warning(message: str) -> None:
    """Print a styled warning panel."""
    i = icon("warn")
    console.print()
    console.print(Panel(Text(message, style="yellow"), border_style="yellow", expand=False, title=f"{i} WARNING"))

def confirm(prompt_text: str) -> bool:
    """Interactive confirmation prompt."""
    i = icon("warn")
    return typer.confirm(f"{i} {prompt_text}", default=False)

def render_table(title: str, headers: List[str], rows: List[List[str]]) -> None:
    """Render a structured Rich Table."""
    console.print()
    table = Table(
        title=title,
        border_style="cyan",
        header_style="bold magenta",
        show_lines=True,
        box=_box(),
    )

    if headers:
        table.add_column(headers[0], justify="center", no_wrap=True)
        for h in headers[1:]:
            table.add_column(h, justify="left", overflow="fold")

    for r in rows:
        table.add_row(*r)

    console.print(table)
    console.print()

def render_snapshots(snapshots: Sequence[Snapshot], numbered: bool = False) -> None:
    rows = []
    for n, snap in enumerate(snapshots, start=1):
        trust = "[green]verified digest[/]" if snap.trusted else "[yellow]no digest[/]"
        row = [
            snap.id,
            snap.kind.value,
            snap.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            human_size(snap.size_bytes),
            ", ".join(snap.included_services) or "-",
            trust,
        ]
        rows.append([str(n)] + row if numbered else row)
    headers = ["ID", "Kind", "Created", "Size", "Services", "Integrity"]
    render_table("Configuration Snapshots", ["#"] + headers if numbered else headers, rows)

def build_archive_tree(label: str, members: Sequence[Tuple[str, int]]) -> Tree:
    """Nest archive member paths into a Rich tree."""
    tree = Tree(f"[bold magenta]{label}[/]")
    nodes: Dict[str, Tree] = {}
    for name, size in members:
        parts = name.split("/")
        parent = tree
        for depth, part in enumerate(parts[:-1]):
            key = "/".join(parts[:depth + 1])
            if key not in nodes:
                nodes[key] = parent.add(f"[bold cyan]{part}/[/]")
            parent = nodes[key]
        parent.add(f"{parts[-1]} [dim]({human_size(size)})[/]")
    return tree

def render_tree(tree: Tree, title: str = "Archive Preview") -> None:
    console.print(Panel(tree, border_style="magenta", title=title))

def render_snapshot_detail(snapshot: Snapshot) -> None:
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Kind", snapshot.kind.value)
    table.add_row("Created", snapshot.created_at.isoformat())
    table.add_row("Hostname", snapshot.hostname or "-")
    table.add_row("Size", human_size(snapshot.size_bytes))
    table.add_row("Digest", snapshot.digest or "[yellow]missing (untrusted)[/]")
    for record in snapshot.manifest:
        detail = f"{record.file_count} files" if record.included else "[dim]not found[/]"
        table.add_row(f"  {record.service}", detail)
    if snapshot.excluded_patterns:
        table.add_row("Excluded", ", ".join(snapshot.excluded_patterns))
    console.print(Panel(table, title=f"{icon('manifest')} {snapshot.id}", border_style="cyan", expand=False))

def render_report(report: HealthReport, verbose: bool = False) -> None:
    """Render a health report grouped by category."""
    console.print()
    table = Table(border_style="cyan", header_style="bold magenta", box=_box())
    table.add_column("Status", justify="center", no_wrap=True)
    table.add_column("Category", style="cyan")
    table.add_column("Details", overflow="fold")
    if verbose:
        table.add_column("Value", justify="right")
    for r in report.results:
        row = [status_label(r.status), r.category, r.message]
        if verbose:
            row.append("" if r.value is None else f"{r.value:g}")
        table.add_row(*row)
    console.print(table)
    render_health_summary(report)

def render_health_summary(report: HealthReport) -> None:
    style = ("green", "yellow", "red")[report.exit_code]
    summary = (
        f"[green]{report.passed} passed[/]  [yellow]{report.warned} warnings[/]  "
        f"[red]{report.failed} failed[/]  [blue]{report.info} info[/]"
    )
    console.print(Panel(
        summary,
        title=f"[bold {style}]{icon('health')} {report.overall.upper()}[/]",
        border_style=style,
        expand=False,
    ))

def _outcome_rows(outcomes: Sequence[ServiceRestoreOutcome]) -> List[List[str]]:
    return [
        [status_label(o.status), o.service, o.source, str(o.destination), o.detail]
        for o in outcomes
    ]

def render_plan(plan: RestorePlan) -> None:
    render_table(
        f"Restore plan for {plan.snapshot.id} (dry run)",
        ["Status", "Service", "Source", "Destination", "Action"],
        _outcome_rows(plan.services),
    )
    safety = "a safety snapshot would be taken first" if plan.safety_backup else "no safety snapshot"
    render_status("info", f"Nothing was changed; {safety}.", style="dim")

def render_restore_summary(result: RestoreResult) -> None:
    render_table(
        f"Restore of {result.snapshot_id}",
        ["Status", "Service", "Source", "Destination", "Details"],
        _outcome_rows(result.outcomes),
    )
    if result.safety_snapshot_id:
        render_status("info", f"Safety snapshot: {result.safety_snapshot_id} (homestack rollback {result.safety_snapshot_id})")
    if result.start_error:
        render_status("error", f"Services failed to start: {result.start_error}", style="red")
    if result.validation is not None:
        render_health_summary(result.validation)

@contextmanager
def render_progress(title: str = "Working...") -> Generator[Status, None, None]:
    """Spinner for operations without measurable progress."""
    with console.status(f"[bold cyan]{title}", spinner="dots2") as status:
        yield status
