from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import Optional

import click
import typer
from typer.core import TyperCommand

from dumpstate.config import DumpstateConfig, load_config
from dumpstate.options import DumpOptions, set_options_from_properties
from dumpstate.orchestrator import STATUS_SOCKET_NAME, Dumpstate
from dumpstate.properties import PropertyStore, SystemPropertyStore
from dumpstate.service import StatusService
from dumpstate.status import RunStatus, exit_code_for
from dumpstate.tool_logging import setup_logging

LOGGER = logging.getLogger(__name__)

USAGE = """usage: dumpstate [-h] [-d] [-p] [-z] [-s] [-S] [-q] [-B] [-P] [-R] [-V version]
  -h: display this help message
  -d: append date to filename
  -p: capture screenshot to filename.png
  -z: generate zipped file
  -s: write output to control socket (for init)
  -S: write file location to control socket (for init; requires -z)
  -q: disable vibrate
  -B: send broadcast when finished
  -P: send broadcast when started and update system properties on progress (requires -B)
  -R: take bugreport in remote mode (requires -z, -d and -B, shouldn't be used with -P)
  -w: start binder service and make it wait for a call to startBugreport
  -v: prints the dumpstate header and exit
  -V: sets the bugreport format version (valid values: default, 2.0, 3.0)
"""

app = typer.Typer(help="dumpstate - capture a device bugreport", add_completion=False)


class DumpstateCommand(TyperCommand):
    def make_context(self, info_name, args, parent=None, **extra):
        try:
            return super().make_context(info_name, args, parent=parent, **extra)
        except click.UsageError as exc:
            typer.echo(USAGE, err=True)
            exc.exit_code = exit_code_for(RunStatus.INVALID_INPUT)
            raise


def _property_store() -> PropertyStore:
    return SystemPropertyStore()


def _build_config(
    config_path: Optional[Path],
    output_dir: Optional[Path],
    version: Optional[str],
    verbosity: int,
) -> DumpstateConfig:
    base = load_config(config_path)
    if output_dir:
        base.output.directory = output_dir
    if version:
        base.version = version
    if verbosity:
        base.verbosity = verbosity
    return base


def _serve(dumpstate: Dumpstate, config: DumpstateConfig) -> None:
    lock = threading.Lock()
    workers: list[threading.Thread] = []

    def start_report() -> bool:
        with lock:
            if workers and workers[-1].is_alive():
                return False
            worker = threading.Thread(target=dumpstate.run, name="bugreport", daemon=True)
            workers.append(worker)
            worker.start()
            return True

    service = StatusService(
        config.output.socket_dir / STATUS_SOCKET_NAME, dumpstate.snapshot, start_report
    )
    dumpstate.service = service
    try:
        service.serve_forever()
    except KeyboardInterrupt:
        LOGGER.info("Status service stopped")


@app.command(cls=DumpstateCommand)
def main(
    add_date: bool = typer.Option(False, "-d", help="Append date to filename"),
    zip_file: bool = typer.Option(False, "-z", help="Generate zipped file"),
    screenshot: bool = typer.Option(False, "-p", help="Capture screenshot"),
    use_socket: bool = typer.Option(False, "-s", help="Write output to control socket"),
    use_control_socket: bool = typer.Option(
        False, "-S", help="Write file location to control socket"
    ),
    quiet: bool = typer.Option(False, "-q", help="Disable vibrate"),
    broadcast: bool = typer.Option(False, "-B", help="Send broadcast when finished"),
    progress_updates: bool = typer.Option(False, "-P", help="Send progress updates"),
    remote: bool = typer.Option(False, "-R", help="Take bugreport in remote mode"),
    version: Optional[str] = typer.Option(None, "-V", help="Bugreport format version"),
    start_service: bool = typer.Option(False, "-w", help="Start the status service and wait"),
    header_only: bool = typer.Option(False, "-v", help="Print the dumpstate header and exit"),
    show_help: bool = typer.Option(False, "-h", help="Display usage and exit"),
    config: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
    output: Optional[Path] = typer.Option(None, "--output", help="Bugreport directory"),
    verbosity: int = typer.Option(0, "--verbose", count=True, help="Increase verbosity"),
) -> None:
    """Capture a bugreport."""
    if show_help:
        typer.echo(USAGE)
        raise typer.Exit(code=exit_code_for(RunStatus.HELP))
    try:
        config_model = _build_config(config, output, version, verbosity)
    except (FileNotFoundError, ValueError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=exit_code_for(RunStatus.INVALID_INPUT))
    setup_logging(config_model.verbosity)

    options = DumpOptions(
        do_add_date=add_date,
        do_zip_file=zip_file,
        do_vibrate=not quiet,
        use_socket=use_socket,
        use_control_socket=use_control_socket,
        do_fb=screenshot,
        do_broadcast=broadcast,
        is_remote_mode=remote,
        show_header_only=header_only,
        do_progress_updates=progress_updates,
        args=" ".join(sys.argv[1:]),
        version=config_model.version,
    )
    properties = _property_store()
    set_options_from_properties(properties, options)
    dumpstate = Dumpstate(options, config_model, properties)

    if start_service:
        _serve(dumpstate, config_model)
        return

    status = dumpstate.run()
    if status == RunStatus.INVALID_INPUT:
        typer.echo(USAGE, err=True)
    raise typer.Exit(code=exit_code_for(status))


if __name__ == "__main__":
    app()
