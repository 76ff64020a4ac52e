"""
Explanation Cache
Hybrid in-memory + Supabase storage for move explanations.

Keys only depend on the board layout field of the FEN and the move, so the
same (board, move) pair hits the cache whatever the side to move, castling
rights, en passant square or clocks say.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Tuple

from errors import CacheUnavailable

logger = logging.getLogger(__name__)


def cache_key(fen: str, move: str) -> str:
    """`<board field>_<move>`, e.g. `rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR_e5`."""
    board_part = fen.split(" ")[0]
    return f"{board_part}_{move}"


@dataclass(frozen=True)
class CacheEntry:
    cache_key: str
    fen: str
    move: str
    explanation: str
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def build(cls, fen: str, move: str, explanation: str) -> "CacheEntry":
        return cls(cache_key=cache_key(fen, move), fen=fen, move=move, explanation=explanation)

    def to_row(self) -> Dict[str, Any]:
        return {
            "cache_key": self.cache_key,
            "fen": self.fen,
            "move": self.move,
            "explanation": self.explanation,
            "created_at": self.created_at,
        }


class ExplanationStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def upsert(self, entry: CacheEntry) -> None: ...


class InMemoryExplanationStore:
    """Process-local store with an optional TTL (ttl_seconds <= 0 disables expiry)."""

    def __init__(self, ttl_seconds: int = 24 * 60 * 60):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[CacheEntry, float]] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[str]:
        item = self._entries.get(key)
        if item is not None:
            entry, stored_at = item
            if self.ttl_seconds <= 0 or time.time() - stored_at < self.ttl_seconds:
                self.hits += 1
                return entry.explanation
            del self._entries[key]
        self.misses += 1
        return None

    async def upsert(self, entry: CacheEntry) -> None:
        # Last write wins.
        self._entries[entry.cache_key] = (entry, time.time())

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        hit_rate = (self.hits / total * 100) if total > 0 else 0
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": f"{hit_rate:.1f}%",
            "entries": len(self._entries),
        }


class SupabaseExplanationStore:
    """
    Supabase table store.

    Expected table:
        move_explanations(cache_key text primary key, fen text, move text,
                          explanation text, created_at timestamptz)

    The supabase client is synchronous, so calls run in a worker thread.
    """

    def __init__(self, client, table: str = "move_explanations"):
        self.client = client
        self.table = table

    @classmethod
    def from_credentials(cls, url: str, key: str, table: str = "move_explanations") -> "SupabaseExplanationStore":
        from supabase import create_client

        return cls(create_client(url, key), table=table)

    async def get(self, key: str) -> Optional[str]:
        def query():
            return (
                self.client.table(self.table)
                .select("explanation")
                .eq("cache_key", key)
                .maybe_single()
                .execute()
            )

        try:
            result = await asyncio.to_thread(query)
        except Exception as e:
            raise CacheUnavailable(f"lookup failed for {key}: {e}") from e

        data = getattr(result, "data", None) if result is not None else None
        if not data:
            return None
        return data.get("explanation") or None

    async def upsert(self, entry: CacheEntry) -> None:
        def write():
            return (
                self.client.table(self.table)
                .upsert(entry.to_row(), on_conflict="cache_key")
                .execute()
            )

        try:
            await asyncio.to_thread(write)
        except Exception as e:
            raise CacheUnavailable(f"upsert failed for {entry.cache_key}: {e}") from e


class TieredExplanationStore:
    """
    Memory first, then the persistent store.

    Persistent hits are copied into memory. Writes go to memory
    unconditionally and then to the persistent store, whose failures
    propagate to the caller.
    """

    def __init__(self, memory: InMemoryExplanationStore, persistent: ExplanationStore):
        self.memory = memory
        self.persistent = persistent

    async def get(self, key: str) -> Optional[str]:
        cached = await self.memory.get(key)
        if cached is not None:
            return cached
        found = await self.persistent.get(key)
        if found is not None:
            fen_board, _, move = key.rpartition("_")
            await self.memory.upsert(CacheEntry(cache_key=key, fen=fen_board, move=move, explanation=found))
        return found

    async def upsert(self, entry: CacheEntry) -> None:
        await self.memory.upsert(entry)
        await self.persistent.upsert(entry)


def build_explanation_store(cache_config) -> ExplanationStore:
    """Supabase-backed tiered store when credentials are configured, memory otherwise."""
    memory = InMemoryExplanationStore(ttl_seconds=cache_config.memory_ttl_seconds)
    if not cache_config.supabase_enabled:
        logger.info("[CACHE] Supabase not configured, using in-memory explanation cache")
        return memory
    persistent = SupabaseExplanationStore.from_credentials(
        cache_config.supabase_url, cache_config.supabase_key, table=cache_config.table
    )
    logger.info(f"[CACHE] explanation cache enabled (Supabase table {cache_config.table})")
    return TieredExplanationStore(memory, persistent)
