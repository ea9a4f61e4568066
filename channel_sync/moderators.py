from __future__ import annotations

from collections.abc import Iterable


class ModeratorDirectory:
    """Cached moderator identities per (server, channel).

    Each refresh replaces the cached set for its key; entries never expire.
    """

    def __init__(self) -> None:
        self._moderators: dict[tuple[str, int], frozenset[str]] = {}

    def replace(self, *, server: str, channel: int, identities: Iterable[str]) -> frozenset[str]:
        moderators = frozenset(identities)
        self._moderators[(server, channel)] = moderators
        return moderators

    def is_moderator(self, identity: str, *, channel: int, server: str) -> bool:
        moderators = self._moderators.get((server, channel))
        return moderators is not None and identity in moderators
