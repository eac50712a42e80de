"""``managerw``: self-updating wrapper around the manager payload.

Anything that is not a wrapper command is forwarded to the cached
manager, so ``managerw start`` behaves like ``managerw run start``.  The
lifecycle verbs ``start``, ``stop`` and ``status`` are renamed to the
manager script's ``docker-run``, ``docker-stop`` and ``docker-status``.
"""

import os
import sys
from pathlib import Path
from typing import Annotated

import typer

from microservice_manager import __version__
from microservice_manager.cli.output import fatal_errors, info, load_settings, success, warning
from microservice_manager.config import Settings
from microservice_manager.resolver import Action
from microservice_manager.selfupdate import SelfUpdateController
from microservice_manager.versioning import stamp_file

os.environ["_TYPER_STANDARD_TRACEBACK"] = "1"

app = typer.Typer(
    name="managerw",
    help="Keep the microservices manager current and run it.",
    pretty_exceptions_enable=False,
    rich_markup_mode=None,
    no_args_is_help=True,
)


def build_controller(settings: Settings) -> SelfUpdateController:
    return SelfUpdateController.from_settings(settings, warn=warning)


@app.command()
def check() -> None:
    """Warn if a newer wrapper has been published."""
    settings = load_settings()
    newer = build_controller(settings).check_self_update()
    if newer is None:
        info("managerw is up to date.")


@app.command()
def ensure() -> None:
    """Refresh the cached manager script if its TTL has expired."""
    settings = load_settings()
    with fatal_errors():
        action = build_controller(settings).ensure_latest_manager()
    if action is Action.REFETCH:
        success(f"Fetched the manager script into {settings.cache_path}")
    else:
        info(f"Using the cached manager script at {settings.cache_path}")


@app.command()
def update() -> None:
    """Replace this wrapper with the published version."""
    settings = load_settings()
    controller = build_controller(settings)
    with fatal_errors():
        old, new = controller.update_self()
    success(f"managerw updated from {old or 'unknown'} to {new} ({controller.wrapper_path}).")


@app.command()
def install(
    dest: Annotated[Path, typer.Argument(help="Where to put the wrapper")] = Path("managerw"),
) -> None:
    """Download the wrapper into a project."""
    settings = load_settings()
    with fatal_errors():
        version = build_controller(settings).install(dest)
    success(f"managerw {version} installed at {dest}.")
    info(f"Run ./{dest.name} --help to get started.")


@app.command()
def version() -> None:
    """Print the wrapper and cached manager versions."""
    settings = load_settings()
    controller = build_controller(settings)
    local = controller.local_version()
    typer.echo(f"managerw {local or __version__}")
    cached = controller.cached_manager_version()
    typer.echo(f"manager {cached if cached is not None else 'not cached'}")


@app.command()
def stamp(
    path: Annotated[Path, typer.Argument(help="Script whose '# Version:' line is rewritten")],
    revision: Annotated[
        str | None, typer.Option("--revision", help="Revision label (default: git short hash)")
    ] = None,
) -> None:
    """Write a fresh CalVer version marker into a script."""
    load_settings()
    with fatal_errors():
        tag = stamp_file(path, revision=revision)
    success(f"Version updated to {tag}")


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def run(ctx: typer.Context) -> None:
    """Check for updates, refresh the manager and run it with the given arguments."""
    settings = load_settings()
    with fatal_errors():
        build_controller(settings).run(payload_args(ctx.args))


WRAPPER_COMMANDS = frozenset({"check", "ensure", "update", "install", "version", "stamp", "run"})

# microservices-manager verbs and the manager script commands they map to
PAYLOAD_COMMANDS = {
    "start": "docker-run",
    "stop": "docker-stop",
    "status": "docker-status",
}


def payload_args(args: list[str]) -> list[str]:
    """Rename a lifecycle verb to the command the manager script expects."""
    if args and args[0] in PAYLOAD_COMMANDS:
        return [PAYLOAD_COMMANDS[args[0]], *args[1:]]
    return list(args)


def forwarded_args(argv: list[str]) -> list[str]:
    """Route manager commands through ``run``."""
    if not argv or argv[0] in WRAPPER_COMMANDS or argv[0] in ("--help", "-h"):
        return argv
    return ["run", *argv]


def main() -> None:
    """Entry point for the managerw CLI."""
    app(args=forwarded_args(sys.argv[1:]), prog_name="managerw")


if __name__ == "__main__":
    main()
