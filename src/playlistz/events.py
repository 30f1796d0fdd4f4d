"""Change-notice payloads exchanged between query hubs.

A notice only names what changed; receivers re-read the store to learn the new
state.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ChangeNotice:
    """Broadcast after a committed write to `collection`/`key`.

    `origin` identifies the sending hub so receivers can ignore their own
    notices (same-process observers were already refreshed synchronously).
    """

    collection: str
    key: str
    origin: str
