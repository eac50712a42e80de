"""Coloured user-facing output and error-to-exit-code mapping."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import typer
from pydantic import ValidationError

from microservice_manager.config import Settings, get_settings
from microservice_manager.errors import ManagerError
from microservice_manager.logging import setup_logging

# Exit code for bad configuration or arguments
USAGE_EXIT_CODE = 2


def success(message: str) -> None:
    typer.secho(message, fg=typer.colors.GREEN)


def info(message: str) -> None:
    typer.echo(message)


def warning(message: str) -> None:
    typer.secho("Warning: ", fg=typer.colors.YELLOW, err=True, nl=False)
    typer.echo(message, err=True)


def error(message: str) -> None:
    typer.secho("Error: ", fg=typer.colors.RED, err=True, nl=False)
    typer.echo(message, err=True)


def load_settings() -> Settings:
    """Load settings and logging, exiting with a usage error on bad config."""
    try:
        settings = get_settings()
    except ValidationError as exc:
        error(f"Invalid configuration:\n{exc}")
        raise typer.Exit(USAGE_EXIT_CODE) from exc
    setup_logging()
    return settings


@contextmanager
def fatal_errors() -> Iterator[None]:
    """Print fatal errors and exit with their code."""
    try:
        yield
    except ManagerError as exc:
        error(str(exc))
        raise typer.Exit(exc.exit_code) from exc
    except ValueError as exc:
        error(str(exc))
        raise typer.Exit(USAGE_EXIT_CODE) from exc
