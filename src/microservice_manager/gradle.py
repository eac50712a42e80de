"""Gradle project helpers: image resolution and build pass-throughs."""

from __future__ import annotations

import subprocess
from pathlib import Path

from microservice_manager.errors import ExternalToolError, ImageResolutionError
from microservice_manager.logging import get_logger

log = get_logger("microservice_manager.gradle")

PROJECT_ID_KEY = "gcpProjectId"

# CLI command -> gradle arguments
TASKS: dict[str, tuple[str, ...]] = {
    "build": ("clean", "build"),
    "debug": ("bootRun", "--debug-jvm"),
    "dev": ("bootRun", "-Dspring.profiles.active=dev"),
    "prod": ("bootRun", "-Dspring.profiles.active=prod"),
    "package": ("clean", "bootJar"),
    "docker-build": ("jib",),
    "docker-local": ("jibDockerBuild",),
}


def read_property(path: Path, key: str) -> str | None:
    """Return the value of ``key=value`` in a properties file, or None."""
    try:
        text = path.read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError):
        return None
    prefix = f"{key}="
    for line in text.splitlines():
        if line.startswith(prefix):
            value = line[len(prefix) :].strip()
            return value or None
    return None


def resolve_image_name(
    service_name: str,
    project_dir: Path | None = None,
    home: Path | None = None,
) -> str:
    """Build ``gcr.io/<gcpProjectId>/<service>:latest`` from gradle.properties.

    The project's own ``gradle.properties`` wins over the user-level one.
    """
    candidates = [
        (project_dir or Path.cwd()) / "gradle.properties",
        (home or Path.home()) / ".gradle" / "gradle.properties",
    ]
    for candidate in candidates:
        project_id = read_property(candidate, PROJECT_ID_KEY)
        if project_id:
            return f"gcr.io/{project_id}/{service_name}:latest"
    raise ImageResolutionError(f"{PROJECT_ID_KEY} is not set in gradle.properties.")


class GradleTool:
    """Runs ``./gradlew`` tasks in the project directory."""

    def __init__(self, project_dir: Path | None = None, wrapper: str = "./gradlew") -> None:
        self._project_dir = project_dir or Path.cwd()
        self._wrapper = wrapper

    def run(self, command: str) -> None:
        """Run the gradle invocation mapped to CLI *command*."""
        if command not in TASKS:
            raise ValueError(f"Unknown build command {command!r}")
        args = [self._wrapper, *TASKS[command]]
        log.info("gradle_run", command=command, args=" ".join(args))
        try:
            proc = subprocess.run(args, cwd=self._project_dir, check=False)
        except OSError as exc:
            raise ExternalToolError(f"Could not run {self._wrapper}: {exc}") from exc
        if proc.returncode != 0:
            raise ExternalToolError(f"'{command}' failed ({' '.join(args)} exited {proc.returncode})")
