"""Per-agent locks for the dispatch critical section.

The capacity check, the active-session check and the assignment write for
one agent must not interleave with another dispatch to the same agent.
``AgentLocks.hold`` serializes them per agent id. The lock is reentrant
within one asyncio task, so the daemon can hold it around its checks while
the dispatch service it calls takes it again around the write.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class AgentLocks:
    """A keyed collection of task-reentrant asyncio locks."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._owners: dict[str, asyncio.Task[object] | None] = {}

    @asynccontextmanager
    async def hold(self, agent_id: str) -> AsyncIterator[None]:
        """Hold the lock of one agent for the duration of the block."""
        current = asyncio.current_task()
        if agent_id in self._owners and self._owners[agent_id] is current:
            yield
            return

        lock = self._locks.setdefault(agent_id, asyncio.Lock())
        async with lock:
            self._owners[agent_id] = current
            try:
                yield
            finally:
                del self._owners[agent_id]

    def is_locked(self, agent_id: str) -> bool:
        lock = self._locks.get(agent_id)
        return lock is not None and lock.locked()
