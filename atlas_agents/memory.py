"""
Per-agent scoped memory with optional expiry.

Agents keep small key/value facts here between tasks (working notes, learned
preferences, summaries of past episodes). Each ``(agent_id, key)`` pair holds
exactly one entry; storing again overwrites the value and resets the expiry.

Expiry semantics:
- ``ttl_seconds`` sets ``expires_at = now + ttl`` at store time
- Reads treat an entry as absent once ``now >= expires_at``
- Physical removal happens only in ``clear_expired_memory`` (a maintenance
  sweep the host schedules), so an expired row may linger until then
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union
from uuid import UUID

from .errors import NotFoundError, ValidationError, logged_operation
from .logging_utils import get_logger
from .persistence import DurableStore
from .schemas import MemoryEntry, MemoryType, utc_now

logger = get_logger(__name__)


class AgentMemoryStore:
    """TTL-bounded key/value memory scoped to one agent per entry."""

    def __init__(self, store: DurableStore, now: Callable[[], datetime] = utc_now):
        self.store = store
        self.now = now

    @logged_operation("store memory", context=("agent_id", "memory_type", "key", "ttl_seconds"))
    async def store_memory(
        self,
        agent_id: UUID,
        memory_type: Union[MemoryType, str],
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
    ) -> MemoryEntry:
        """
        Upsert the memory entry for ``(agent_id, key)``.

        Args:
            agent_id: Owning agent
            memory_type: One of short_term, long_term, episodic, semantic
            key: Lookup key, unique per agent
            value: Any JSON-serializable value
            ttl_seconds: Optional lifetime; None keeps the entry until overwritten

        Returns:
            The stored entry (memory_id and created_at kept on overwrite)

        Raises:
            ValidationError: Unknown memory type, empty key or non-positive TTL
            NotFoundError: Agent does not exist
        """
        try:
            memory_type = MemoryType(memory_type)
        except ValueError:
            raise ValidationError(
                "memory_type", memory_type, f"expected one of {[t.value for t in MemoryType]}"
            ) from None
        if not key:
            raise ValidationError("key", key, "must be a non-empty string")
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValidationError("ttl_seconds", ttl_seconds, "must be positive")
        if await self.store.get_agent(agent_id) is None:
            raise NotFoundError("agent", agent_id)

        now = self.now()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds is not None else None
        entry = MemoryEntry(
            agent_id=agent_id,
            memory_type=memory_type,
            key=key,
            value=value,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        return await self.store.upsert_memory(entry)

    @logged_operation("retrieve memory", context=("agent_id", "key"))
    async def retrieve_memory(self, agent_id: UUID, key: str) -> Any:
        """Return the stored value, or None when absent or expired."""
        entry = await self.store.get_memory(agent_id, key)
        if entry is None:
            return None
        if entry.is_expired(self.now()):
            logger.debug(
                "Memory entry expired",
                extra={"context": {"agent_id": str(agent_id), "key": key}},
            )
            return None
        return entry.value

    @logged_operation("clear expired memory", success_level=None)
    async def clear_expired_memory(self) -> int:
        """Physically delete every expired entry; returns the number removed."""
        removed = await self.store.delete_expired_memory(self.now())
        logger.info("Cleared expired memory entries", extra={"context": {"removed": removed}})
        return removed
