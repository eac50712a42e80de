"""Version negotiation for cached artifacts, free of any I/O."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from microservice_manager.versioning import VersionTag, is_newer


class Action(Enum):
    """What to do with an artifact."""

    USE_CACHED = "use_cached"
    REFETCH = "refetch"
    WARN_ONLY = "warn_only"


@dataclass(frozen=True)
class CachePolicy:
    """Freshness facts and update policy for one artifact.

    Attributes:
        ttl: Seconds a fetched copy stays valid.
        age: Seconds since the local copy was fetched; None if there is none.
        auto_update: False for artifacts the user updates explicitly (the
            wrapper itself); those are only ever warned about.
    """

    ttl: float
    age: float | None = None
    auto_update: bool = True

    @property
    def fresh(self) -> bool:
        return self.age is not None and self.age < self.ttl


def resolve(
    local: VersionTag | None,
    remote: VersionTag | None,
    policy: CachePolicy,
) -> Action:
    """Decide how to treat the local copy of an artifact.

    - Explicitly updated artifacts: ``WARN_ONLY`` when the remote version is
      known and strictly newer, otherwise ``USE_CACHED``.
    - Auto-updated artifacts: ``REFETCH`` when there is no local copy;
      ``USE_CACHED`` while it is fresh; once stale, ``USE_CACHED`` only if
      both versions are known and the remote is not newer, else ``REFETCH``.
    """
    if not policy.auto_update:
        return Action.WARN_ONLY if is_newer(remote, local) else Action.USE_CACHED

    if policy.age is None:
        return Action.REFETCH
    if policy.fresh:
        return Action.USE_CACHED
    if local is not None and remote is not None and not is_newer(remote, local):
        return Action.USE_CACHED
    return Action.REFETCH
