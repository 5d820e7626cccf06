import json
import queue
import signal
import sys

from loguru import logger
from rich.console import Console

from lockdown.core import EnforcementCore
from lockdown.dispatcher import AlarmDispatcher
from lockdown.errors import LockdownError
from lockdown.privilege import PrivilegeGate
from lockdown.schema import AlarmEvent
from lockdown.settings import settings
from lockdown.status import StatusSurface
from lockdown.store import ScheduleStore
from lockdown.utils.processes import LockPrimitive
from lockdown.utils.state import cleanup_state, write_state
from lockdown.utils.time import ClockSource, parse_hm, resolve_local_timezone

console = Console()

EVENT_WAIT_SECONDS = 1.0


def build_engine(events: queue.Queue) -> tuple[EnforcementCore, AlarmDispatcher]:
    """Wires the core to real host adapters; alarms are posted onto `events`."""
    clock = ClockSource(tz=resolve_local_timezone(settings.timezone))
    dispatcher = AlarmDispatcher(post=events.put, clock=clock)
    core = EnforcementCore(
        gate=PrivilegeGate(),
        lock=LockPrimitive(),
        clock=clock,
        dispatcher=dispatcher,
        store=ScheduleStore(),
        surface=StatusSurface(),
    )
    return core, dispatcher


def read_command() -> dict | None:
    """Consumes the command file written by the CLI, if there is one."""
    if not settings.command_file.exists():
        return None

    try:
        with open(settings.command_file) as f:
            command_data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        console.print(f"[red]Error reading command file: {e}[/red]")
        return None
    finally:
        settings.command_file.unlink(missing_ok=True)

    if not isinstance(command_data, dict) or "command" not in command_data:
        logger.warning(f"Ignoring malformed command: {command_data!r}")
        return None
    return command_data


def handle_command(core: EnforcementCore, command: dict) -> None:
    """Runs one CLI command on the core. Errors were already surfaced by the core."""
    name = command.get("command")
    console.print(f"[bold blue]Received command:[/bold blue] {name}")
    try:
        if name == "start_countdown":
            core.start_countdown(int(command.get("duration_ms", 0)))
        elif name == "set_daily_window":
            try:
                start_hm = parse_hm(command.get("start", ""))
                end_hm = parse_hm(command.get("end", ""))
            except LockdownError as e:
                core.surface.ephemeral(e.notice)
                raise
            core.set_daily_window(start_hm, end_hm)
        elif name == "cancel_daily_window":
            core.cancel_daily_window()
        elif name == "lock_now":
            core.lock_immediately()
        elif name == "reconcile":
            core.reconcile()
        else:
            logger.warning(f"Unknown command: {name}")
    except LockdownError as e:
        console.print(f"[red]Command {name} failed:[/red] {e}")
    except (TypeError, ValueError) as e:
        logger.error(f"Malformed arguments for {name}: {e}")


def handle_event(core: EnforcementCore, event) -> None:
    if isinstance(event, AlarmEvent):
        core.on_alarm(event)
    else:
        handle_command(core, event)


def _raise_system_exit(signum, frame):
    sys.exit(0)


def run_daemon():
    """Main loop: one queue, one consumer. Commands and alarms are handled in order."""
    events: queue.Queue = queue.Queue()
    core, dispatcher = build_engine(events)

    console.print("[bold green]Lockdown daemon started...[/bold green]")
    console.print(f"Data directory: [cyan]{settings.data_dir}[/cyan]")
    console.print("Waiting for alarms and commands. Press Ctrl+C to stop.")

    # systemd stops the unit with SIGTERM; route it through the finally blocks
    signal.signal(signal.SIGTERM, _raise_system_exit)

    write_state()

    with core:
        try:
            core.on_startup()
            dispatcher.start()
            while True:
                command = read_command()
                if command:
                    events.put(command)

                try:
                    event = events.get(timeout=EVENT_WAIT_SECONDS)
                except queue.Empty:
                    pass
                else:
                    handle_event(core, event)

                write_state(core.snapshot())
        finally:
            console.print("\n[yellow]Stopping daemon...[/yellow]")
            dispatcher.stop()
            cleanup_state()
