"""
Explanation Pipeline - natural-language rationales for the top engine moves.

Flow for one ranked result:
    1. Probe the cache for every top-k move concurrently (errors count as misses).
    2. If everything was cached, stop here.
    3. Otherwise send ONE batched prompt listing only the uncached moves.
    4. Parse the `MOVE: explanation` reply against the known move list.
    5. Write new explanations back to the cache without waiting.

A failed service call only affects the uncached moves; cached moves always
keep their text.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Sequence, Set, Tuple

import chess
from openai import OpenAI

from analysis_aggregator import RankedResult
from errors import ExplanationServiceError
from explanation_cache import CacheEntry, ExplanationStore, cache_key

logger = logging.getLogger(__name__)

NO_EXPLANATION = "No explanation available"
EXPLANATION_ERROR = "Error fetching explanation"
DEFAULT_TOP_K = 4

STATUS_CACHED = "cached"
STATUS_GENERATED = "generated"
STATUS_MISSING = "missing"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class ExplanationRequest:
    fen: str
    side_to_move: str  # "White" or "Black"
    moves: Tuple[Tuple[str, str], ...]  # (san, display eval)


@dataclass(frozen=True)
class ExplanationOutcome:
    move: str
    text: str
    status: str

    @property
    def ok(self) -> bool:
        return self.status in (STATUS_CACHED, STATUS_GENERATED)


class ExplanationService(Protocol):
    async def explain(self, request: ExplanationRequest) -> str: ...


def build_prompt(request: ExplanationRequest) -> str:
    moves_str = ", ".join(f"{san} (eval: {ev})" for san, ev in request.moves)
    return f"""You are a chess coach. Analyze this position and explain each candidate move concisely.

Position (FEN): {request.fen}
{request.side_to_move} to move.

Top engine moves: {moves_str}

For each move, give a 1-2 sentence explanation of the strategic or tactical idea. Focus on:
- What the move accomplishes
- Any threats created or prevented
- Positional considerations

Format your response as:
MOVE: explanation
MOVE: explanation
...

Be concise and insightful, like a strong club player explaining to an improving student."""


# Optional bullet, optional move number ("1.", "12...", "1)"), optional bold
# markup before or after the number, then a delimiter and the explanation text.
_LINE_RE = re.compile(
    r"^\s*(?:[-*•]\s+)?\**\s*(?:\d+\s*(?:\.+|\))\s*)?\**\s*(?P<move>[^\s:*]+)\s*\**\s*(?:[:\-–—]\s*|\s+)(?P<text>\S.*)$"
)


def _strip_check(san: str) -> str:
    return san.rstrip("+#!?")


def parse_explanations(text: str, expected: Sequence[str]) -> Dict[str, str]:
    """
    Map each expected SAN move to the first reply line that names it.

    The move token must equal a known candidate exactly; a missing or extra
    check/mate suffix is tolerated when it does not make two candidates collide.
    Lines naming anything else are ignored.
    """
    exact = {san: san for san in expected}
    loose: Dict[str, Optional[str]] = {}
    for san in expected:
        base = _strip_check(san)
        loose[base] = None if base in loose else san

    found: Dict[str, str] = {}
    for raw in text.splitlines():
        match = _LINE_RE.match(raw)
        if not match:
            continue
        token = match.group("move").strip("*")
        san = exact.get(token) or loose.get(_strip_check(token))
        if san is None or san in found:
            continue
        explanation = match.group("text").strip().strip("*").strip()
        if explanation:
            found[san] = explanation
    return found


class OpenAIExplanationService:
    """Chat-completions client; the blocking call runs in a worker thread."""

    def __init__(
        self,
        client: OpenAI,
        *,
        model: str = "gpt-4o-mini",
        max_tokens: int = 1024,
        timeout_s: float = 30.0,
    ):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.timeout_s = timeout_s

    @classmethod
    def from_config(cls, explanation_config) -> Optional["OpenAIExplanationService"]:
        if not explanation_config.enabled:
            return None
        client = OpenAI(api_key=explanation_config.api_key, base_url=explanation_config.base_url)
        return cls(
            client,
            model=explanation_config.model,
            max_tokens=explanation_config.max_tokens,
            timeout_s=explanation_config.timeout_s,
        )

    async def explain(self, request: ExplanationRequest) -> str:
        prompt = build_prompt(request)

        def call_openai():
            return self.client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )

        try:
            response = await asyncio.wait_for(asyncio.to_thread(call_openai), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise ExplanationServiceError(f"timed out after {self.timeout_s}s") from e
        except Exception as e:
            raise ExplanationServiceError(str(e)) from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise ExplanationServiceError("malformed completion response") from e
        return content or ""


class ExplanationPipeline:
    def __init__(
        self,
        store: ExplanationStore,
        service: Optional[ExplanationService],
        *,
        top_k: int = DEFAULT_TOP_K,
    ):
        self.store = store
        self.service = service
        self.top_k = top_k
        self.external_calls = 0
        self._pending_writes: Set[asyncio.Task] = set()

    async def explain(self, result: RankedResult) -> Dict[str, ExplanationOutcome]:
        """Explanations for the top-k moves of `result`, keyed by SAN, in rank order."""
        candidates = []
        seen: Set[str] = set()
        # A mid-depth snapshot can hold the same move at two ranks.
        for line in result.top(self.top_k):
            if line.san not in seen:
                seen.add(line.san)
                candidates.append(line)
        if not candidates:
            return {}
        fen = result.fen

        probes = await asyncio.gather(*(self._probe(fen, line.san) for line in candidates))
        outcomes: Dict[str, ExplanationOutcome] = {}
        uncached = []
        for line, cached in zip(candidates, probes):
            if cached:
                outcomes[line.san] = ExplanationOutcome(line.san, cached, STATUS_CACHED)
            else:
                uncached.append(line)

        if not uncached:
            logger.info(f"[EXPLAIN] all {len(candidates)} moves served from cache")
            return self._ordered(candidates, outcomes)

        side = "White" if result.side_to_move == chess.WHITE else "Black"
        request = ExplanationRequest(
            fen=fen,
            side_to_move=side,
            moves=tuple((line.san, line.eval_text) for line in uncached),
        )

        try:
            if self.service is None:
                raise ExplanationServiceError("explanation service is not configured")
            self.external_calls += 1
            reply = await self.service.explain(request)
        except ExplanationServiceError as e:
            logger.warning(f"[EXPLAIN] explanation request failed for {len(uncached)} moves: {e}")
            for line in uncached:
                outcomes[line.san] = ExplanationOutcome(line.san, EXPLANATION_ERROR, STATUS_ERROR)
            return self._ordered(candidates, outcomes)

        parsed = parse_explanations(reply, [line.san for line in uncached])
        for line in uncached:
            text = parsed.get(line.san)
            if text:
                outcomes[line.san] = ExplanationOutcome(line.san, text, STATUS_GENERATED)
                self._write_back(CacheEntry.build(fen, line.san, text))
            else:
                outcomes[line.san] = ExplanationOutcome(line.san, NO_EXPLANATION, STATUS_MISSING)
        return self._ordered(candidates, outcomes)

    async def drain_writes(self) -> None:
        """Wait for outstanding cache writes (used on shutdown and in tests)."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    @staticmethod
    def _ordered(candidates, outcomes: Dict[str, ExplanationOutcome]) -> Dict[str, ExplanationOutcome]:
        return {line.san: outcomes[line.san] for line in candidates}

    async def _probe(self, fen: str, move: str) -> Optional[str]:
        try:
            return await self.store.get(cache_key(fen, move))
        except Exception as e:
            logger.warning(f"[CACHE] lookup failed for {move}, treating as miss: {e}")
            return None

    def _write_back(self, entry: CacheEntry) -> None:
        task = asyncio.create_task(self._store_entry(entry))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _store_entry(self, entry: CacheEntry) -> None:
        try:
            await self.store.upsert(entry)
        except Exception as e:
            logger.warning(f"[CACHE] write failed for {entry.cache_key}: {e}")

