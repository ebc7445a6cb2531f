# cli.py
from __future__ import annotations

import logging
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path

import click

from bringup.config import load_deployment
from bringup.engine import Engine, EXIT_CONFIGURATION, EXIT_OK, EXIT_STEP_FAILURE, mark_cleaned, run_many
from bringup.errors import ConfigurationError, UnknownRun
from bringup.settings import LOG_DIR, STATE_URL
from bringup.store import StateStore
from bringup.ui.console import Console, set_console, get_console


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@contextmanager
def _cancel_on_signals(cancel: threading.Event):
    """SIGINT/SIGTERM ask the engine to stop; the current step is terminated."""

    def _handler(signum, frame):
        get_console().print_info(f"\nReceived signal {signum}, stopping after cleanup of the current step...")
        cancel.set()

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _open_store(ctx) -> StateStore:
    return StateStore(ctx.obj["state_url"])


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option(
    "--state-url",
    default=None,
    help="SQLAlchemy URL of the state store (defaults to BRINGUP_STATE_URL or .bringup/state.db)",
)
@click.option("--log-dir", default=None, type=click.Path(file_okay=False), help="Where step output logs go")
@click.pass_context
def cli(ctx, debug, state_url, log_dir):
    """bringup: resumable GPU VM deployment orchestrator."""
    console = Console(debug=debug)
    set_console(console)
    _configure_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["state_url"] = state_url or STATE_URL
    ctx.obj["log_dir"] = Path(log_dir) if log_dir else LOG_DIR


@cli.command()
@click.argument("configs", nargs=-1, required=True, type=click.Path(dir_okay=False))
@click.option("--run-id", default=None, help="Run id (defaults to <resource_group>-<vm_name>); single config only")
@click.option("--reprovision", is_flag=True, default=False, help="Bring a cleaned run up again")
@click.option("--confirm", "confirm", multiple=True, help="Confirm a step left part way, so it may rerun")
@click.option("--workers", default=None, type=int, help="Runs driven in parallel (several configs)")
@click.pass_context
def run(ctx, configs, run_id, reprovision, confirm, workers):
    """Create or resume the Run for each deployment CONFIG."""
    console = get_console()

    try:
        deployments = [load_deployment(path) for path in configs]
    except ConfigurationError as e:
        console.print_error("Invalid deployment", str(e))
        sys.exit(EXIT_CONFIGURATION)

    if run_id:
        if len(deployments) > 1:
            console.print_error("Invalid arguments", "--run-id only applies to a single config")
            sys.exit(EXIT_CONFIGURATION)
        deployments[0].run_id = run_id

    cancel = threading.Event()
    try:
        store = _open_store(ctx)
        with _cancel_on_signals(cancel):
            if len(deployments) == 1:
                engine = Engine(deployments[0], store, cancel=cancel, log_dir=ctx.obj["log_dir"])
                result = engine.run(reprovision=reprovision, confirm=confirm)
                results = {result.run_id: result}
            else:
                results = run_many(
                    deployments,
                    store,
                    max_workers=workers,
                    cancel=cancel,
                    reprovision=reprovision,
                    confirm=confirm,
                    log_dir=ctx.obj["log_dir"],
                )
    except ConfigurationError as e:
        console.print_error("Configuration error", str(e))
        sys.exit(EXIT_CONFIGURATION)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_STEP_FAILURE)

    console.print_results({rid: r.outcome for rid, r in results.items()})
    for rid, r in results.items():
        if r.message and not r.ok:
            console.print_info(f"  {rid}: {r.message}")
    sys.exit(max((r.exit_code for r in results.values()), default=EXIT_OK))


@cli.command()
@click.argument("run_id")
@click.pass_context
def status(ctx, run_id):
    """Show the persisted state of a Run."""
    console = get_console()
    try:
        store = _open_store(ctx)
        run_ = store.load(run_id)
        holder = store.lease_holder(run_id)
    except UnknownRun as e:
        console.print_error("Unknown run", str(e), suggestion="List known runs with:\n  bringup runs")
        sys.exit(EXIT_CONFIGURATION)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_STEP_FAILURE)

    console.print_status(run_, lease_holder=holder)


@cli.command()
@click.argument("run_id")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
              help="Deployment file (defaults to the one the run was created from)")
@click.option("--force", is_flag=True, default=False, help="Mark the run cleaned without calling the provider")
@click.pass_context
def cleanup(ctx, run_id, config_path, force):
    """Release a Run's resources and close it."""
    console = get_console()
    cancel = threading.Event()
    try:
        store = _open_store(ctx)
        run_ = store.load(run_id)
        config_path = config_path or run_.config_path

        with _cancel_on_signals(cancel):
            if force:
                result = mark_cleaned(store, run_id)
            else:
                if not config_path:
                    raise ConfigurationError(
                        f"run {run_id} has no recorded deployment file; pass --config",
                    )
                dep = load_deployment(config_path)
                engine = Engine(dep, store, cancel=cancel, log_dir=ctx.obj["log_dir"])
                result = engine.cleanup(run_id)
    except UnknownRun as e:
        console.print_error("Unknown run", str(e), suggestion="List known runs with:\n  bringup runs")
        sys.exit(EXIT_CONFIGURATION)
    except ConfigurationError as e:
        console.print_error("Configuration error", str(e))
        sys.exit(EXIT_CONFIGURATION)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_STEP_FAILURE)

    console.print_run_finished(run_id, result.outcome, result.message)
    sys.exit(result.exit_code)


@cli.command()
@click.pass_context
def runs(ctx):
    """List every Run in the state store."""
    console = get_console()
    try:
        store = _open_store(ctx)
        console.print_runs(store.list_runs())
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_STEP_FAILURE)


if __name__ == "__main__":
    cli()
