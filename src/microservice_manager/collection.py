"""Postman collection generation from a temporarily started instance.

Builds the image locally, starts the service, waits for it, pulls the
OpenAPI document and converts it with ``openapi-to-postmanv2``.  The
instance is always stopped afterwards, including on Ctrl-C.
"""

from __future__ import annotations

import json
import subprocess
import tempfile
from pathlib import Path

import httpx

from microservice_manager.errors import ExternalToolError, FetchError, LaunchError
from microservice_manager.gradle import GradleTool
from microservice_manager.logging import get_logger
from microservice_manager.supervisor import ServiceSupervisor

log = get_logger("microservice_manager.collection")

DEFAULT_SPEC_PATH = "/pricequote/v3/api-docs/public"
DEFAULT_COLLECTION_NAME = "Authentication Service API Collection"
DEFAULT_COLLECTION_DESCRIPTION = "This collection contains the endpoints for the PriceQuote API."


def download_openapi(url: str, dest: Path, client: httpx.Client | None = None) -> None:
    """Save the OpenAPI document at *url* into *dest*.

    The local instance serves a self-signed certificate, so TLS
    verification is off.
    """
    own_client = client is None
    http = client or httpx.Client(verify=False, timeout=30)
    try:
        resp = http.get(url)
    except httpx.HTTPError as exc:
        raise FetchError(url, str(exc) or type(exc).__name__) from exc
    finally:
        if own_client:
            http.close()
    if not resp.is_success:
        raise FetchError(url, f"HTTP {resp.status_code}")
    dest.write_bytes(resp.content)


def convert_to_collection(spec_file: Path, output: Path, name: str, npx: str = "npx") -> None:
    """Run ``openapi-to-postmanv2`` on *spec_file*."""
    output.parent.mkdir(parents=True, exist_ok=True)
    args = [
        npx,
        "openapi-to-postmanv2",
        "--pretty",
        "-s",
        str(spec_file),
        "-o",
        str(output),
        "--options",
        json.dumps({"collectionName": name}),
    ]
    try:
        proc = subprocess.run(args, check=False)
    except OSError as exc:
        raise ExternalToolError(f"Could not run {npx}: {exc}") from exc
    if proc.returncode != 0:
        raise ExternalToolError("Failed to generate Postman collection")


def label_collection(output: Path, name: str, description: str) -> None:
    """Set the collection name and description in place."""
    data = json.loads(output.read_text(encoding="utf-8"))
    info = data.setdefault("info", {})
    info["name"] = name
    desc = info.get("description")
    if isinstance(desc, dict):
        desc["content"] = description
    else:
        info["description"] = {"content": description}
    output.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


def generate_collection(
    supervisor: ServiceSupervisor,
    gradle: GradleTool,
    output: Path = Path("postman") / "postman_collection.json",
    spec_path: str = DEFAULT_SPEC_PATH,
    name: str = DEFAULT_COLLECTION_NAME,
    description: str = DEFAULT_COLLECTION_DESCRIPTION,
    client: httpx.Client | None = None,
) -> Path:
    """Run the whole build -> start -> convert -> stop flow."""
    gradle.run("docker-local")

    try:
        started = supervisor.start()
        if started.port is None:
            raise LaunchError(
                f"{supervisor.service_name} is already running but its host port is not "
                "recorded; stop it and retry"
            )
        supervisor.wait_ready()

        with tempfile.TemporaryDirectory() as tmp:
            spec_file = Path(tmp) / "openapi.json"
            spec_url = f"https://localhost:{started.port}{spec_path}"
            log.info("collection_fetching_openapi", url=spec_url)
            download_openapi(spec_url, spec_file, client=client)
            convert_to_collection(spec_file, output, name)

        label_collection(output, name, description)
    finally:
        supervisor.stop()

    log.info("collection_generated", output=str(output))
    return output
