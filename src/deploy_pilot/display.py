# display.py
# All terminal output for the deploy-pilot CLI.
#
# This module owns presentation entirely. The engine never formats for the
# terminal: it publishes ProgressEvents, and render_event() draws them.
# run.py calls the named functions here for headers and results.
#
# Colour language:
#   cyan    pipeline stages and status
#   blue    model thinking
#   magenta tool calls
#   yellow  pre-flight warnings, recovery
#   green   success
#   red     failures and halts

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from deploy_pilot.events import ProgressEvent
from deploy_pilot.models import DeploymentOutcome, RecoverySession, RecoverySessionStatus
from deploy_pilot.results import DeploymentConfigResult, ProjectAnalysisResult

console = Console()

EVENT_STYLE = {
    "tool_use": ("TOOL", "magenta"),
    "thinking": ("MODEL", "blue"),
    "pre_flight": ("PRE-FLIGHT", "cyan"),
    "build": ("BUILD", "cyan"),
    "deploy": ("DEPLOY", "green"),
    "status": ("STATUS", "cyan"),
    "error": ("ERROR", "red"),
}

CHECK_STYLE = {"passed": "green", "warning": "yellow", "failed": "red", "pending": "dim"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Command entry
# ---------------------------------------------------------------------------


def banner(command: str, provider: str, model: str, path: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]deploy-pilot {command}[/bold cyan]\n\n"
            f"[dim]Provider :[/dim] [white]{provider}[/white]\n"
            f"[dim]Model    :[/dim] [white]{model or 'default'}[/white]\n"
            f"[dim]Project  :[/dim] [white]{path}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def stage(title: str) -> None:
    console.print()
    console.print(Rule(f"[cyan]{title}[/cyan]", style="cyan"))


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------


def render_event(event: ProgressEvent) -> None:
    """ProgressChannel subscriber: one line per event."""
    tag, color = EVENT_STYLE.get(event.type, ("EVENT", "white"))
    details = event.details or {}

    if event.type == "build":
        # build output is high-volume; keep it dim and unlabelled
        console.print(Text(f"  {_mono(event.message, 160)}", style="dim"))
        return

    if event.type == "pre_flight" and "status" in details:
        color = CHECK_STYLE.get(details["status"], color)

    if event.type == "tool_use" and details.get("success") is False:
        color = "red"

    console.print(_label(tag, color), Text(f" {_mono(event.message)}", style=color))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


def analysis_result(result: ProjectAnalysisResult) -> None:
    console.print()
    table = Table(box=box.SIMPLE_HEAVY, show_header=False, padding=(0, 1))
    table.add_column("Field", style="bold cyan", width=16)
    table.add_column("Value", style="white")

    table.add_row("Type", result.project_type)
    table.add_row("Language", result.language.primary)
    table.add_row(
        "Frameworks",
        ", ".join(f"{f.name} ({f.confidence:.0%})" for f in result.frameworks),
    )
    table.add_row("Dependencies", str(result.dependencies.total_count))
    table.add_row("Ports", ", ".join(str(p) for p in result.build_config.ports) or "none")
    if result.build_config.start_command:
        table.add_row("Start", result.build_config.start_command)
    table.add_row("Deployable", "[green]yes[/green]" if result.summary.deployable else "[red]no[/red]")

    console.print(
        Panel(
            table,
            title=_label("PROJECT ANALYSIS", "green"),
            subtitle=f"[dim]{_mono(result.summary.overview, 100)}[/dim]",
            border_style="green",
            padding=(0, 1),
        )
    )
    for warning in result.warnings or []:
        console.print(_label("WARNING", "yellow"), f"[yellow] {warning}[/yellow]")


def config_result(result: DeploymentConfigResult, output_path: str) -> None:
    console.print()
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold green", padding=(0, 1))
    table.add_column("File", style="bold white")
    table.add_column("Description", style="dim white")
    for item in result.files:
        table.add_row(item.file_name, item.description or "")
    console.print(
        Panel(
            table,
            title=_label(f"GENERATED {result.config_type.upper()} CONFIG", "green"),
            subtitle=f"[dim]{output_path}[/dim]",
            border_style="green",
            padding=(0, 1),
        )
    )


def deployment_result(outcome: DeploymentOutcome) -> None:
    console.print()
    if outcome.success:
        body = "[bold green]Deployment is running.[/bold green]"
        if outcome.deploy_url:
            body += f"\n[dim]URL:[/dim] [white]{outcome.deploy_url}[/white]"
        if outcome.container_id:
            body += f"\n[dim]Container:[/dim] [white]{outcome.container_id[:12]}[/white]"
        if outcome.compose_project:
            body += f"\n[dim]Compose project:[/dim] [white]{outcome.compose_project}[/white]"
        for service, url in outcome.service_urls.items():
            body += f"\n[dim]{service}:[/dim] [white]{url}[/white]"
        console.print(Panel(body, title=_label("DEPLOYED ✓", "green"), border_style="green", padding=(0, 2)))
        return

    error = outcome.error
    body = f"[bold red]{error.message if error else 'Deployment failed'}[/bold red]"
    if error is not None:
        body += f"\n[dim]Type:[/dim] {error.type.value}   [dim]Stage:[/dim] {error.stage.value}"
        if error.context:
            body += "\n\n[dim]" + "\n".join(_mono(line, 160) for line in error.context[-10:]) + "[/dim]"
    console.print(Panel(body, title=_label("DEPLOYMENT FAILED ✗", "red"), border_style="red", padding=(0, 2)))


def recovery_result(session: RecoverySession) -> None:
    console.print()
    color = {
        RecoverySessionStatus.COMPLETED: "green",
        RecoverySessionStatus.CANCELLED: "yellow",
    }.get(session.status, "red")

    body = (
        f"[bold {color}]{session.status.value.upper()}[/bold {color}]"
        f" after {session.attempt_number}/{session.max_attempts} attempts\n"
    )
    if session.summary:
        body += f"\n[white]{session.summary}[/white]\n"
    if session.deploy_url and session.status == RecoverySessionStatus.COMPLETED:
        body += f"\n[dim]URL:[/dim] [white]{session.deploy_url}[/white]\n"
    console.print(Panel(body, title=_label("RECOVERY", color), border_style=color, padding=(0, 2)))

    if session.fixes_applied:
        table = Table(box=box.SIMPLE, show_header=True, header_style="bold yellow", padding=(0, 1))
        table.add_column("File", style="bold white")
        table.add_column("Reason", style="white")
        for fix in session.fixes_applied:
            table.add_row(fix.file or "", fix.reason or fix.message)
        console.print(table)

    for suggestion in session.suggestions:
        console.print(_label("TRY", "yellow"), f"[yellow] {suggestion.description}[/yellow]")


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold red]Execution halted.[/bold red]\n[white]{reason}[/white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
