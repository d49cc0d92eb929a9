"""On-demand drill generation behind an explicit, injectable cache.

The planner only ever talks to a DrillGenerator: it asks is_available(), then
generate_drills(). Generated drills are re-keyed into the ai_ namespace and
kept in the generator's DrillCache so later resolve_drill() calls can find
them. Any failure (no key, timeout, bad JSON, schema mismatch) is logged and
returns an empty list; the planner's fallback chain takes over from there.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import ValidationError

from app.config import settings
from app.schemas import Drill, GenerateDrillsResponse, GrammarPointOut
from app.services import llm
from app.services.drill_addressing import GeneratedDrillRef

logger = logging.getLogger(__name__)


def difficulty_for_mastery(mastery: int) -> str:
    if mastery < 40:
        return "easy"
    if mastery < 70:
        return "medium"
    return "hard"


class DrillCache:
    """In-memory TTL cache of generated drills keyed by drill id."""

    def __init__(self, ttl_s: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self._clock = clock
        self._items: dict[str, tuple[float, Drill]] = {}
        self._lock = threading.Lock()

    def get(self, drill_id: str) -> Optional[Drill]:
        with self._lock:
            entry = self._items.get(drill_id)
            if entry is None:
                return None
            expires_at, drill = entry
            if self._clock() >= expires_at:
                del self._items[drill_id]
                return None
            return drill

    def set(self, drill: Drill) -> None:
        with self._lock:
            self._items[drill.drill_id] = (self._clock() + self.ttl_s, drill)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class DrillRequest:
    grammar: GrammarPointOut
    count: int
    difficulty: str = "medium"


class DrillGenerator:
    def __init__(
        self,
        cache: DrillCache,
        timeout_s: int = 45,
        max_retries: int = 1,
        token_factory: Callable[[], str] = lambda: uuid.uuid4().hex[:8],
    ):
        self.cache = cache
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self._token_factory = token_factory

    def is_available(self) -> bool:
        return llm.is_configured()

    def _request_once(self, request: DrillRequest, deadline: float) -> list[Drill]:
        grammar = request.grammar
        raw = llm.request_drills(
            grammar_id=grammar.grammar_id,
            grammar_name=grammar.name,
            core_rule=grammar.core_rule,
            structure=grammar.structure,
            examples=[e.text for e in grammar.examples],
            count=request.count,
            difficulty=request.difficulty,
            timeout=self.timeout_s,
            deadline=deadline,
        )
        parsed = GenerateDrillsResponse.model_validate(raw)
        usable = [
            d for d in parsed.drills
            if d.kind in ("choice", "judge") and (d.kind == "judge" or (d.options and d.correct_id))
        ]
        return usable[:request.count]

    def generate_drills(self, request: DrillRequest) -> list[Drill]:
        """Generate up to request.count drills. Returns [] on any failure.

        timeout_s is one budget for the request: retries and provider
        fallbacks all share it.
        """
        if request.count <= 0 or not self.is_available():
            return []

        deadline = time.monotonic() + self.timeout_s
        drills: list[Drill] = []
        for attempt in range(self.max_retries + 1):
            if time.monotonic() >= deadline:
                logger.warning(
                    "Drill generation for grammar %d ran out of time after %d attempts",
                    request.grammar.grammar_id, attempt,
                )
                break
            try:
                drills = self._request_once(request, deadline)
                break
            except (llm.LLMError, ValidationError, ValueError) as e:
                logger.warning(
                    "Drill generation for grammar %d failed (attempt %d): %s",
                    request.grammar.grammar_id, attempt + 1, e,
                )
        if not drills:
            return []

        keyed = []
        for drill in drills:
            drill_id = GeneratedDrillRef(request.grammar.grammar_id, self._token_factory()).encode()
            stored = drill.model_copy(update={"drill_id": drill_id, "grammar_id": request.grammar.grammar_id})
            self.cache.set(stored)
            keyed.append(stored)
        logger.info("Generated %d drills for grammar %d", len(keyed), request.grammar.grammar_id)
        return keyed


def build_default_generator() -> DrillGenerator:
    return DrillGenerator(
        cache=DrillCache(ttl_s=settings.generation_cache_ttl_s),
        timeout_s=settings.generation_timeout_s,
        max_retries=settings.generation_max_retries,
    )
