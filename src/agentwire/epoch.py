"""Request epochs: keep stale asynchronous updates out of live state.

Every user send opens a new epoch stamped with a monotonically increasing
request id and the ``mode:conversation`` key it started under.  The
:class:`EpochGuard` owns the message list and accepts a mutation only if it
carries the epoch that is still current; anything from a superseded send
or an abandoned conversation is dropped without error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from agentwire.message import ChatMode, Message

logger = logging.getLogger(__name__)

Mutation = Callable[[list[Message]], list[Message]]


def make_key(mode: ChatMode | str, conversation_id: str | None) -> str:
    return f"{ChatMode(mode).value}:{conversation_id or 'none'}"


@dataclass(frozen=True)
class RequestEpoch:
    request_id: int
    active_key: str


class EpochGuard:
    """Single owner of a conversation view's messages, stamped by generation.

    Args:
        key: Initial ``mode:conversation`` key.
    """

    def __init__(self, key: str = "chat:none"):
        self._seq = 0
        self._active_id = 0
        self._active_key = key
        self._messages: list[Message] = []
        self.dropped = 0

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def active_key(self) -> str:
        return self._active_key

    @property
    def active_request_id(self) -> int:
        return self._active_id

    def begin(self, key: str | None = None) -> RequestEpoch:
        """Open a new epoch, superseding whichever one was active."""
        self._seq += 1
        self._active_id = self._seq
        return RequestEpoch(request_id=self._seq, active_key=key or self._active_key)

    def is_current(self, epoch: RequestEpoch) -> bool:
        return epoch.request_id == self._active_id and epoch.active_key == self._active_key

    def submit(self, epoch: RequestEpoch, mutation: Mutation) -> bool:
        """Apply *mutation* if *epoch* is current.  Returns whether it applied."""
        if not self.is_current(epoch):
            self.dropped += 1
            logger.debug(
                "Dropping update from stale epoch %d (%s)", epoch.request_id, epoch.active_key
            )
            return False
        self._messages = mutation(self._messages)
        return True

    def retire(self, epoch: RequestEpoch) -> None:
        """Close *epoch* once its turn has ended; no-op if already superseded."""
        if self._active_id == epoch.request_id:
            self._active_id = 0

    def invalidate(self) -> None:
        self._active_id = 0

    def switch(self, key: str) -> None:
        """Move to another conversation or mode, invalidating the active epoch."""
        self._active_key = key
        self._active_id = 0
        self._messages = []

    def adopt(self, key: str) -> None:
        """Re-key the current view without clearing it.

        Used when a fresh conversation receives its id on first send.
        """
        self._active_key = key
        self._active_id = 0

    def load(self, key: str, messages: list[Message]) -> bool:
        """Install loaded history if *key* is still the active conversation."""
        if key != self._active_key:
            self.dropped += 1
            return False
        self._messages = list(messages)
        return True

    def clear(self) -> None:
        self._messages = []
