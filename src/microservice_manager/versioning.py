"""CalVer helpers for the wrapper and manager payloads.

Payload scripts carry a ``# Version: YEAR.WEEK.SECONDS+REV`` comment line.
YEAR and WEEK (``%U``, Sunday-based) come from the build time, SECONDS is
the offset into that week, zero-padded to six digits, and REV is a short
source revision.  Ordering uses the three numeric fields only; REV is
informational.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from microservice_manager.logging import get_logger

log = get_logger("microservice_manager.versioning")

_CALVER_RE = re.compile(
    r"^(?P<year>\d{4})\.(?P<week>\d{1,2})\.(?P<seconds>\d{1,6})(?:\+(?P<rev>[0-9A-Za-z]+))?$"
)
_MARKER_RE = re.compile(r"^#[ \t]*Version:[ \t]*(?P<version>\S+)[ \t]*$", re.MULTILINE)


@dataclass(frozen=True, order=True)
class VersionTag:
    """A parsed CalVer version."""

    year: int
    week: int
    seconds: int
    revision: str = field(default="", compare=False)

    @classmethod
    def parse(cls, raw: str) -> VersionTag:
        """Parse ``YEAR.WEEK.SECONDS[+REV]``.

        Raises:
            ValueError: *raw* is not a CalVer string.
        """
        m = _CALVER_RE.match(raw.strip())
        if m is None:
            raise ValueError(f"Not a CalVer version: {raw!r}")
        return cls(
            year=int(m.group("year")),
            week=int(m.group("week")),
            seconds=int(m.group("seconds")),
            revision=m.group("rev") or "",
        )

    def __str__(self) -> str:
        core = f"{self.year}.{self.week:02d}.{self.seconds:06d}"
        return f"{core}+{self.revision}" if self.revision else core


def parse_version(raw: str | None) -> VersionTag | None:
    """Parse *raw*, returning None when it is missing or malformed."""
    if not raw:
        return None
    try:
        return VersionTag.parse(raw)
    except ValueError:
        return None


def is_newer(candidate: VersionTag | None, current: VersionTag | None) -> bool:
    """Return True if *candidate* is strictly newer than *current*.

    Unknown versions never count as newer.
    """
    if candidate is None or current is None:
        return False
    return candidate > current


def read_version_marker(text: str) -> VersionTag | None:
    """Return the version from the first ``# Version:`` line of *text*."""
    m = _MARKER_RE.search(text)
    if m is None:
        return None
    return parse_version(m.group("version"))


def write_version_marker(text: str, tag: VersionTag) -> str:
    """Replace the first ``# Version:`` line of *text* with *tag*.

    Raises:
        ValueError: *text* has no version marker.
    """
    new_text, count = _MARKER_RE.subn(f"# Version: {tag}", text, count=1)
    if count == 0:
        raise ValueError("No '# Version:' metadata found")
    return new_text


def generate_version(now: datetime, revision: str) -> VersionTag:
    """Build the CalVer tag for *now*."""
    days_since_sunday = (now.weekday() + 1) % 7
    week_start = (now - timedelta(days=days_since_sunday)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return VersionTag(
        year=now.year,
        week=int(now.strftime("%U")),
        seconds=int((now - week_start).total_seconds()),
        revision=revision,
    )


def current_revision(cwd: Path | None = None) -> str:
    """Short git revision of *cwd*, or ``unknown`` outside a repository."""
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=10,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return "unknown"
    revision = proc.stdout.strip()
    if proc.returncode != 0 or not revision.isalnum():
        return "unknown"
    return revision


def stamp_file(path: Path, revision: str | None = None, now: datetime | None = None) -> VersionTag:
    """Rewrite the version marker of the script at *path* in place.

    Raises:
        FileNotFoundError: *path* does not exist.
        ValueError: the script has no version marker.
    """
    text = path.read_text(encoding="utf-8")
    tag = generate_version(now or datetime.now(), revision or current_revision())
    path.write_text(write_version_marker(text, tag), encoding="utf-8")
    log.info("version_stamped", path=str(path), version=str(tag))
    return tag
