import shutil
import subprocess
import sys
import time
from pathlib import Path

import psutil
import typer
from loguru import logger
from platformdirs import user_config_dir
from rich.console import Console
from rich.table import Table

from lockdown.dispatcher import AlarmDispatcher
from lockdown.errors import LockdownError
from lockdown.privilege import LOCK_REASON, SCHEDULE_REASON, PrivilegeGate
from lockdown.schema import GrantOutcome, PrivilegeStatus
from lockdown.settings import load_settings, settings
from lockdown.status import StatusSurface
from lockdown.store import COUNTDOWN, DAILY_WINDOW, ScheduleStore
from lockdown.utils.logging import setup_logging
from lockdown.utils.state import read_state, write_json_atomic
from lockdown.utils.time import (
    ClockSource,
    format_duration_seconds,
    parse_duration_seconds,
    parse_hm,
    resolve_local_timezone,
)

app = typer.Typer(help="Lockdown - scheduled screen lock daemon")
console = Console()

STALE_COMMAND_SECONDS = 30
SERVICE_NAME = "lockdown.service"


def is_daemon_running() -> bool:
    """Checks if the daemon is running via state file and PID."""
    state = read_state()
    if not state:
        return False
    pid = state.get("pid")
    return bool(pid) and psutil.pid_exists(pid)


def _require_daemon() -> None:
    if not is_daemon_running():
        console.print(
            "[red]Error:[/red] Daemon is not running. Please start it with `lockdown start`."
        )
        raise typer.Exit(1)


def _require_grant(reason: str) -> None:
    """Runs the consent flow when the grant is missing. Never retries the command."""
    gate = PrivilegeGate()
    if gate.is_granted() == PrivilegeStatus.GRANTED:
        return

    console.print("[yellow]Device Admin not active.[/yellow]")
    outcome = gate.request_grant(reason)
    if outcome == GrantOutcome.GRANTED:
        console.print("[green]Device Admin enabled.[/green] Run the command again.")
    else:
        console.print("[red]Device Admin activation failed.[/red]")
    raise typer.Exit(1)


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/red] {error}")
    raise typer.Exit(1) from None


def send_command(command: dict) -> None:
    """Hands a command to the daemon through the command file."""
    if settings.command_file.exists():
        # Check if the file is stale (older than 30 seconds)
        mtime = settings.command_file.stat().st_mtime
        if time.time() - mtime > STALE_COMMAND_SECONDS:
            console.print("[yellow]Found stale command file, removing...[/yellow]")
            settings.command_file.unlink(missing_ok=True)
        else:
            console.print(
                f"[yellow]Warning:[/yellow] Another command is already pending (at {settings.command_file}). "
                "Please wait a moment before trying again."
            )
            raise typer.Exit(1)

    try:
        write_json_atomic(settings.command_file, command)
    except OSError as e:
        console.print(f"[red]Error:[/red] Could not send command to daemon: {e}")
        raise typer.Exit(1)


@app.command()
def countdown(
    seconds: str = typer.Argument(..., help="How long to keep the device locked, in seconds"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Lock now and announce when the timer ends."""
    setup_logging(verbose=verbose)

    try:
        duration = parse_duration_seconds(seconds)
    except LockdownError as e:
        _fail(e)

    if duration > settings.max_countdown_minutes * 60:
        console.print(
            f"[red]Error:[/red] Countdown ({format_duration_seconds(duration)}) "
            f"exceeds the maximum allowed ({settings.max_countdown_minutes}m). "
            "This is a guardrail to prevent permanent lockouts."
        )
        raise typer.Exit(1)

    _require_daemon()
    _require_grant(LOCK_REASON)
    send_command({"command": "start_countdown", "duration_ms": duration * 1000})
    console.print(
        f"[bold green]Requesting countdown lock...[/bold green] "
        f"Duration: {format_duration_seconds(duration)}"
    )


@app.command()
def window(
    start: str = typer.Argument(..., help="Daily lock start, HH:MM"),
    end: str = typer.Argument(..., help="Daily lock end, HH:MM (may wrap past midnight)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Set the recurring daily lock window, replacing any previous one."""
    setup_logging(verbose=verbose)

    try:
        parse_hm(start)
        parse_hm(end)
    except LockdownError as e:
        _fail(e)

    _require_daemon()
    _require_grant(SCHEDULE_REASON)
    send_command({"command": "set_daily_window", "start": start, "end": end})
    console.print(f"[bold green]Requesting daily lock window:[/bold green] {start} - {end}")


@app.command(name="cancel-window")
def cancel_window(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Remove the daily lock window."""
    setup_logging(verbose=verbose)
    _require_daemon()
    send_command({"command": "cancel_daily_window"})
    console.print("[green]Requested removal of the daily lock window.[/green]")


@app.command()
def lock(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Lock the screen right now."""
    setup_logging(verbose=verbose)
    _require_daemon()
    _require_grant(LOCK_REASON)
    send_command({"command": "lock_now"})
    console.print("[green]Lock requested.[/green]")


@app.command()
def grant(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Allow Lockdown to lock this session."""
    setup_logging(verbose=verbose)
    gate = PrivilegeGate()
    if gate.is_granted() == PrivilegeStatus.GRANTED:
        console.print("[green]Device Admin is already active.[/green]")
        return

    outcome = gate.request_grant(LOCK_REASON)
    if outcome != GrantOutcome.GRANTED:
        console.print("[red]Device Admin activation failed.[/red]")
        raise typer.Exit(1)

    console.print("[green]Device Admin enabled.[/green]")
    if is_daemon_running():
        # Re-arm any window that was kept unarmed while the grant was missing
        send_command({"command": "reconcile"})


@app.command()
def revoke(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Withdraw the lock grant. Scheduled locks will report instead of locking."""
    setup_logging(verbose=verbose)
    if PrivilegeGate().revoke():
        StatusSurface().ephemeral("Device Admin disabled")
        console.print("[yellow]Device Admin disabled.[/yellow]")
    else:
        console.print("Device Admin was not active.")


def _in_text(delta_secs: int) -> str:
    if delta_secs <= 0:
        return "NOW"
    return format_duration_seconds(delta_secs)


@app.command(name="list")
def list_schedules(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List the persisted schedules and their armed alarms."""
    setup_logging(verbose=verbose)
    clock = ClockSource(tz=resolve_local_timezone(settings.timezone))
    now = clock.now()

    try:
        schedules = ScheduleStore().all()
    except LockdownError as e:
        _fail(e)

    daily = schedules[DAILY_WINDOW]
    timer = schedules[COUNTDOWN]
    records = AlarmDispatcher(post=lambda event: None, clock=clock).records()

    if not daily and not timer and not records:
        console.print("[yellow]No scheduled or active lockouts found.[/yellow]")
        return

    table = Table(title="Schedules")
    table.add_column("Kind", style="cyan")
    table.add_column("Start", style="magenta")
    table.add_column("End", style="magenta")
    table.add_column("Length", style="blue")
    if daily:
        start_m = daily.start_h * 60 + daily.start_m
        end_m = daily.end_h * 60 + daily.end_m
        length = (end_m - start_m) % (24 * 60)
        table.add_row(
            "Daily window",
            daily.start_label,
            daily.end_label + (" (+1d)" if daily.wraps_midnight and length else ""),
            format_duration_seconds(length * 60) if length else "0m",
        )
    if timer:
        table.add_row(
            "Countdown",
            clock.local(timer.started_at).strftime("%H:%M:%S"),
            clock.local(timer.ends_at).strftime("%H:%M:%S"),
            format_duration_seconds(timer.duration_ms // 1000),
        )
    console.print(table)

    alarms = Table(title="Armed Alarms")
    alarms.add_column("Key", style="cyan")
    alarms.add_column("Next Fire", style="magenta")
    alarms.add_column("In", style="green")
    alarms.add_column("Repeats", style="yellow")
    for record in records:
        alarms.add_row(
            record.key.value,
            clock.local(record.next_fire).strftime("%Y-%m-%d %H:%M"),
            _in_text(int((record.next_fire - now).total_seconds())),
            "Daily" if record.recurring else "Once",
        )
    console.print(alarms)


@app.command()
def config(
    timezone: str | None = typer.Option(
        None, "--timezone", "-z", help="IANA timezone for daily windows (e.g. Europe/Berlin)"
    ),
    poll_seconds: float | None = typer.Option(
        None, "--poll", help="Longest wait between wall-clock checks, in seconds"
    ),
    late_seconds: int | None = typer.Option(
        None, "--late", help="Seconds after which an alarm counts as delivered late"
    ),
    max_countdown_mins: int | None = typer.Option(
        None, "--max-countdown", "-m", help="Maximum countdown in minutes (guardrail)"
    ),
    title: str | None = typer.Option(None, "--title", "-t", help="Notification title"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure clock, alarm and notification settings."""
    setup_logging(verbose=verbose)
    current_settings = load_settings()

    if timezone is not None:
        current_settings.timezone = timezone or None
    if poll_seconds is not None:
        if poll_seconds <= 0:
            console.print("[red]Error:[/red] Poll interval must be positive.")
            raise typer.Exit(1)
        current_settings.alarm_poll_seconds = poll_seconds
    if late_seconds is not None:
        current_settings.late_tolerance_seconds = late_seconds
    if max_countdown_mins is not None:
        if max_countdown_mins < 1:
            console.print("[red]Error:[/red] Maximum countdown must be at least 1 minute.")
            raise typer.Exit(1)
        console.print(
            "\n[bold red]WARNING:[/bold red] Changing the maximum countdown "
            "can lead to extended lockouts. Set this value carefully."
        )
        current_settings.max_countdown_minutes = max_countdown_mins
    if title is not None:
        current_settings.notify_title = title

    current_settings.save()

    table = Table(title="Current Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Timezone", current_settings.timezone or "system")
    table.add_row("Alarm Poll (s)", str(current_settings.alarm_poll_seconds))
    table.add_row("Late Tolerance (s)", str(current_settings.late_tolerance_seconds))
    table.add_row("Max Countdown (m)", str(current_settings.max_countdown_minutes))
    table.add_row("Notification Title", current_settings.notify_title)
    console.print(table)
    console.print("[green]Configuration saved![/green]")


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Check the daemon, the lock grant and any active lockdown."""
    setup_logging(verbose=verbose)

    # 1. Systemd Service Status
    is_active = False
    systemd_pid = None
    try:
        active_res = subprocess.run(
            ["systemctl", "--user", "is-active", SERVICE_NAME],
            capture_output=True,
            text=True,
        )
        is_active = active_res.stdout.strip() == "active"

        if is_active:
            pid_res = subprocess.run(
                ["systemctl", "--user", "show", SERVICE_NAME, "-p", "MainPID", "--value"],
                capture_output=True,
                text=True,
            )
            val = pid_res.stdout.strip()
            if val and val != "0":
                systemd_pid = int(val)
    except (OSError, ValueError):
        pass

    # 2. State File Status
    state = read_state() or {}
    daemon_pid = state.get("pid")
    if daemon_pid and not psutil.pid_exists(daemon_pid):
        daemon_pid = None
    active_lockout = state.get("active_lockout") if daemon_pid else None

    if not daemon_pid and systemd_pid:
        daemon_pid = systemd_pid

    console.print("[bold cyan]Lockdown - Daemon Status[/bold cyan]")
    status_text = (
        "[bold green]● Running[/bold green]"
        if is_active or daemon_pid
        else "[bold red]○ Stopped[/bold red]"
    )
    console.print(f"Service Status: {status_text}")
    if daemon_pid:
        console.print(f"Daemon PID: [magenta]{daemon_pid}[/magenta]")

    granted = PrivilegeGate().is_granted() == PrivilegeStatus.GRANTED
    console.print(
        "Device Admin: "
        + ("[green]active[/green]" if granted else "[red]not active[/red] (run `lockdown grant`)")
    )

    if active_lockout and active_lockout.get("phase", "idle") != "idle":
        console.print("\n[bold yellow]⚠️ LOCKDOWN ACTIVE[/bold yellow]")
        if active_lockout.get("window_on") and active_lockout.get("window"):
            w = active_lockout["window"]
            console.print(f"Daily window: {w['start']} - {w['end']}")
        if active_lockout.get("countdown_on") and active_lockout.get("countdown_ends_at"):
            console.print(f"Countdown ends at: {active_lockout['countdown_ends_at']}")
    else:
        console.print("\nNo lockdown currently active.")

    if not is_active and not daemon_pid:
        console.print(
            "\n[dim]To start the daemon, run: [bold]lockdown start[/bold] or use systemd.[/dim]"
        )


SERVICE_UNIT = """[Unit]
Description=Lockdown scheduled screen lock daemon
After=graphical-session.target

[Service]
ExecStart={exec_start} start --daemonize
Restart=on-failure

[Install]
WantedBy=default.target
"""
START_WAIT_SECONDS = 5.0


def service_path() -> Path:
    return Path(user_config_dir("systemd")) / "user" / SERVICE_NAME


def _systemctl(*args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["systemctl", "--user", *args], check=True, capture_output=True, text=True
    )


def install_service() -> Path:
    """Writes the user unit for this interpreter; reloads systemd only when it changed."""
    path = service_path()
    exec_start = shutil.which("lockdown") or f"{sys.executable} -m lockdown.cli"
    unit = SERVICE_UNIT.format(exec_start=exec_start)
    if path.exists() and path.read_text() == unit:
        return path

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(unit)
    _systemctl("daemon-reload")
    logger.info(f"Installed {path}")
    return path


def _wait_for_daemon(timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if is_daemon_running():
            return True
        time.sleep(0.25)
    return is_daemon_running()


@app.command()
def start(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    daemonize: bool = typer.Option(
        False,
        "--daemonize",
        hidden=True,
        help="Internal flag for systemd to run the daemon directly.",
    ),
) -> None:
    """Install the systemd user unit if needed and start the daemon."""
    setup_logging(verbose=verbose)

    if daemonize:
        # ExecStart of the unit lands here
        from lockdown.daemon import run_daemon

        run_daemon()
        return

    if is_daemon_running():
        console.print("[yellow]Daemon is already running.[/yellow]")
        return

    try:
        unit = install_service()
        _systemctl("enable", "--now", SERVICE_NAME)
    except FileNotFoundError:
        console.print("[red]Error:[/red] `systemctl` not found. Lockdown needs a systemd user session.")
        raise typer.Exit(1)
    except subprocess.CalledProcessError as e:
        console.print(f"[red]Error:[/red] systemctl {' '.join(e.cmd[2:])} failed.")
        console.print(f"[dim]{e.stderr}[/dim]")
        raise typer.Exit(1)

    if not _wait_for_daemon(START_WAIT_SECONDS):
        console.print(
            f"[red]Error:[/red] {SERVICE_NAME} did not come up. "
            f"See `journalctl --user -u {SERVICE_NAME}`."
        )
        raise typer.Exit(1)
    console.print(f"[bold green]Daemon running[/bold green] ({unit})")


if __name__ == "__main__":
    app()
