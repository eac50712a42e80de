"""``microservices-manager``: service lifecycle, registry and build commands.

Usage:
    microservices-manager start
    microservices-manager wait
    microservices-manager status
    microservices-manager stop
    microservices-manager register pricequote http://localhost:8444
    microservices-manager find pricequote
"""

import os
from collections.abc import Callable
from pathlib import Path
from typing import Annotated

import typer

from microservice_manager.cli.output import fatal_errors, info, load_settings, success, warning
from microservice_manager.collection import (
    DEFAULT_COLLECTION_DESCRIPTION,
    DEFAULT_COLLECTION_NAME,
    DEFAULT_SPEC_PATH,
    generate_collection,
)
from microservice_manager.config import Settings
from microservice_manager.gradle import TASKS, GradleTool
from microservice_manager.locking import create_lock
from microservice_manager.registry import FileServiceRegistry, validate_name
from microservice_manager.supervisor import ServiceSupervisor

os.environ["_TYPER_STANDARD_TRACEBACK"] = "1"

app = typer.Typer(
    name="microservices-manager",
    help="Run microservice containers locally and keep the shared service registry.",
    pretty_exceptions_enable=False,
    rich_markup_mode=None,
    no_args_is_help=True,
)


def build_registry(settings: Settings) -> FileServiceRegistry:
    return FileServiceRegistry(settings.registry_path, create_lock(settings))


def build_supervisor(settings: Settings) -> ServiceSupervisor:
    return ServiceSupervisor.from_settings(settings, build_registry(settings))


def _settings(ctx: typer.Context) -> Settings:
    settings = load_settings()
    service = (ctx.obj or {}).get("service")
    if service:
        with fatal_errors():
            validate_name(service)
            # model_copy would skip the field validators
            settings = Settings.model_validate({**settings.model_dump(), "service_name": service})
    return settings


@app.callback()
def main_callback(
    ctx: typer.Context,
    service: Annotated[
        str | None,
        typer.Option("--service", "-s", help="Service name (default: PAQQETS_SERVICE_NAME)"),
    ] = None,
) -> None:
    ctx.obj = {"service": service}


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------


@app.command()
def start(ctx: typer.Context) -> None:
    """Start the service container on the first free port."""
    settings = _settings(ctx)
    with fatal_errors():
        result = build_supervisor(settings).start()
    if result.already_running:
        warning(f"{settings.service_name} is already running (container {result.container_id}).")
    else:
        success(f"Docker container is running on port {result.port}.")
        if result.log_file is not None:
            info(f"Logs: {result.log_file}")
    if result.url:
        info(result.url)


@app.command()
def wait(ctx: typer.Context) -> None:
    """Wait until the service answers on its readiness endpoint."""
    settings = _settings(ctx)
    with fatal_errors():
        attempts = build_supervisor(settings).wait_ready()
    success(f"Application is up and running (after {attempts} attempt(s)).")


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop the service container and remove its registry entry."""
    settings = _settings(ctx)
    with fatal_errors():
        result = build_supervisor(settings).stop()
    if result.stopped:
        success(result.message)
    else:
        info(result.message)


@app.command()
def status(ctx: typer.Context) -> None:
    """Report whether the service container is running (exit 1 if not)."""
    settings = _settings(ctx)
    with fatal_errors():
        report = build_supervisor(settings).status()
    if report.running:
        success(report.message)
        if report.log_dir is not None:
            info(f"Logs in {report.log_dir}")
        return
    info(report.message)
    raise typer.Exit(1)


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------


@app.command()
def register(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Service name")],
    url: Annotated[str, typer.Argument(help="URL the service is reachable at")],
) -> None:
    """Add or replace a registry entry."""
    settings = _settings(ctx)
    with fatal_errors():
        build_registry(settings).register(name, url)
    success(f"Registered {name} at {url}")


@app.command()
def find(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Service name")],
) -> None:
    """Print the URL of a registered service (nothing if unknown)."""
    settings = _settings(ctx)
    with fatal_errors():
        url = build_registry(settings).find(name)
    if url is not None:
        typer.echo(url)


@app.command()
def remove(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Service name")],
) -> None:
    """Remove a registry entry; unknown names are ignored."""
    settings = _settings(ctx)
    with fatal_errors():
        build_registry(settings).remove(name)
    success(f"Removed {name}")


@app.command()
def services(ctx: typer.Context) -> None:
    """List all registered services."""
    settings = _settings(ctx)
    with fatal_errors():
        entries = build_registry(settings).entries()
    for name, url in entries.items():
        typer.echo(f"{name}={url}")


# ----------------------------------------------------------------------
# Build tools
# ----------------------------------------------------------------------


def _gradle_command(command: str) -> Callable[[], None]:
    def run_task() -> None:
        load_settings()
        with fatal_errors():
            GradleTool().run(command)
        success(f"'{command}' completed.")

    run_task.__doc__ = f"Run ./gradlew {' '.join(TASKS[command])}."
    return run_task


for _command in TASKS:
    app.command(name=_command)(_gradle_command(_command))


@app.command("postman-collection")
def postman_collection(
    ctx: typer.Context,
    output: Annotated[
        Path, typer.Option("--output", "-o", help="Collection file to write")
    ] = Path("postman") / "postman_collection.json",
    spec_path: Annotated[
        str, typer.Option("--spec-path", help="OpenAPI document path on the running service")
    ] = DEFAULT_SPEC_PATH,
    name: Annotated[str, typer.Option("--name", help="Collection name")] = DEFAULT_COLLECTION_NAME,
    description: Annotated[
        str, typer.Option("--description", help="Collection description")
    ] = DEFAULT_COLLECTION_DESCRIPTION,
) -> None:
    """Build the image, start it and export its API as a Postman collection."""
    settings = _settings(ctx)
    with fatal_errors():
        path = generate_collection(
            build_supervisor(settings),
            GradleTool(),
            output=output,
            spec_path=spec_path,
            name=name,
            description=description,
        )
    success(f"Postman collection generated at {path}")


def main() -> None:
    """Entry point for the microservices-manager CLI."""
    app()


if __name__ == "__main__":
    main()
