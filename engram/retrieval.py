from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import CorruptIndexError, SemanticUnavailableError
from .semantic import embed_vectors
from .store import ENTITY_TYPES, KNOWLEDGE_KINDS, EntityRecord, MemoryStore
from .store.search import tokenize

if TYPE_CHECKING:
    from .config import EngramConfig

logger = logging.getLogger(__name__)

_QUALIFIER_RE = re.compile(r'(?<!\S)(type|project):("[^"]*"|\S+)', re.IGNORECASE)

_TYPE_ALIASES = {
    "knowledge": "knowledge",
    "knowledges": "knowledge",
    "memory": "knowledge",
    "memories": "knowledge",
    "observation": "observation",
    "observations": "observation",
    "obs": "observation",
    "session": "session",
    "sessions": "session",
    "conversation": "conversation",
    "conversations": "conversation",
    "topic": "conversation",
    "topics": "conversation",
}


@dataclass(frozen=True)
class ParsedQuery:
    text: str
    entity_types: tuple[str, ...] = ()
    knowledge_kinds: tuple[str, ...] = ()
    projects: tuple[str, ...] = ()


def parse_query(query: str) -> ParsedQuery:
    """Split ``type:<kind>`` and ``project:<path>`` qualifiers from the search text."""

    entity_types: list[str] = []
    kinds: list[str] = []
    projects: list[str] = []

    def _take(match: re.Match[str]) -> str:
        name = match.group(1).lower()
        value = match.group(2).strip('"').strip()
        if not value:
            return " "
        if name == "project":
            projects.append(value)
            return " "
        lowered = value.lower()
        for part in lowered.split(","):
            if part in _TYPE_ALIASES:
                entity_types.append(_TYPE_ALIASES[part])
            elif part in KNOWLEDGE_KINDS or part.rstrip("s") in KNOWLEDGE_KINDS:
                entity_types.append("knowledge")
                kinds.append(part if part in KNOWLEDGE_KINDS else part.rstrip("s"))
            else:
                return match.group(0)
        return " "

    text = _QUALIFIER_RE.sub(_take, query or "")
    return ParsedQuery(
        text=" ".join(text.split()),
        entity_types=tuple(dict.fromkeys(entity_types)),
        knowledge_kinds=tuple(dict.fromkeys(kinds)),
        projects=tuple(dict.fromkeys(projects)),
    )


def normalize_by_max(scores: dict[Any, float]) -> dict[Any, float]:
    if not scores:
        return {}
    top = max(scores.values())
    if top <= 0:
        return {key: 0.0 for key in scores}
    return {key: min(1.0, max(0.0, value / top)) for key, value in scores.items()}


def make_snippet(text: str, tokens: Sequence[str], width: int = 160) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= width:
        return collapsed
    lowered = collapsed.lower()
    positions = [lowered.find(token) for token in tokens if token]
    positions = [pos for pos in positions if pos >= 0]
    start = max(0, min(positions) - width // 4) if positions else 0
    end = min(len(collapsed), start + width)
    snippet = collapsed[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(collapsed):
        snippet = snippet + "..."
    return snippet


@dataclass(frozen=True)
class SearchHit:
    entity_type: str
    entity_id: int
    entity: dict[str, Any]
    score: float
    snippet: str
    created_at: str
    keyword_score: float | None = None
    vector_score: float | None = None

    @property
    def ref(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref": self.ref,
            "type": self.entity_type,
            "id": self.entity_id,
            "score": round(self.score, 6),
            "snippet": self.snippet,
            "created_at": self.created_at,
            "keyword_score": self.keyword_score,
            "vector_score": self.vector_score,
            "entity": self.entity,
        }


@dataclass
class SearchResponse:
    results: list[SearchHit] = field(default_factory=list)
    degraded: bool = False
    degraded_reasons: list[str] = field(default_factory=list)

    def grouped(self) -> dict[str, list[dict[str, Any]]]:
        groups: dict[str, list[dict[str, Any]]] = {}
        for hit in self.results:
            groups.setdefault(hit.entity_type, []).append(hit.to_dict())
        return groups

    def to_dict(self) -> dict[str, Any]:
        return {
            "degraded": self.degraded,
            "degraded_reasons": list(self.degraded_reasons),
            "items": [hit.to_dict() for hit in self.results],
            "groups": self.grouped(),
        }


class HybridRetriever:
    """Merge keyword (FTS5 bm25) and vector (sqlite-vec cosine) candidates.

    Both branches are normalized to [0, 1]. Entities found by both get the
    weighted sum; entities found by one get that score times
    ``coverage_penalty``. Weights are rescaled to sum to 1, so a dual-signal
    hit never ranks below the same raw score seen by a single branch.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        keyword_weight: float = 0.5,
        vector_weight: float = 0.5,
        coverage_penalty: float = 0.8,
        candidate_limit: int = 50,
        embed: Callable[[str], Sequence[float]] | None = None,
    ) -> None:
        total = keyword_weight + vector_weight
        if keyword_weight < 0 or vector_weight < 0 or total <= 0:
            raise ValueError("search weights must be non-negative and not both zero")
        if not 0.0 < coverage_penalty < 1.0:
            raise ValueError("coverage_penalty must be in (0, 1)")
        self.store = store
        self.keyword_weight = keyword_weight / total
        self.vector_weight = vector_weight / total
        self.coverage_penalty = coverage_penalty
        self.candidate_limit = candidate_limit
        self._embed = embed or (lambda text: embed_vectors([text])[0])

    @classmethod
    def from_config(cls, store: MemoryStore, cfg: EngramConfig) -> HybridRetriever:
        return cls(
            store,
            keyword_weight=cfg.keyword_weight,
            vector_weight=cfg.vector_weight,
            coverage_penalty=cfg.coverage_penalty,
            candidate_limit=cfg.search_candidate_limit,
        )

    def combine(self, keyword: float | None, vector: float | None) -> float:
        if keyword is not None and vector is not None:
            return self.keyword_weight * keyword + self.vector_weight * vector
        single = keyword if keyword is not None else vector
        if single is None:
            return 0.0
        return single * self.coverage_penalty

    def search(
        self,
        query: str,
        limit: int = 10,
        filters: dict[str, Any] | None = None,
    ) -> SearchResponse:
        try:
            return self._search(query, limit, filters or {})
        except Exception as exc:
            logger.warning("search failed; returning no results", exc_info=exc)
            return SearchResponse(degraded=True, degraded_reasons=["error"])

    def _search(self, query: str, limit: int, filters: dict[str, Any]) -> SearchResponse:
        parsed = parse_query(query)
        if not parsed.text or limit <= 0:
            return SearchResponse()
        entity_types = self._entity_types(parsed, filters)
        if entity_types is not None and not entity_types:
            return SearchResponse()
        kinds = set(parsed.knowledge_kinds) | set(filters.get("kinds") or [])
        projects = list(parsed.projects)
        if filters.get("project"):
            projects.append(str(filters["project"]))
        project_ids: set[int] | None = None
        if projects:
            project_ids = {p.id for name in projects for p in self.store.find_projects(name)}
            if not project_ids:
                return SearchResponse()

        candidates = max(self.candidate_limit, limit * 5)
        response = SearchResponse()
        keyword_raw: dict[tuple[str, int], float] = {}
        vector_raw: dict[tuple[str, int], float] = {}
        try:
            keyword_raw = self.store.keyword_candidates(
                parsed.text, limit=candidates, entity_types=entity_types
            )
        except CorruptIndexError as exc:
            logger.warning("keyword index unavailable; vector-only ranking: %s", exc)
            response.degraded = True
            response.degraded_reasons.append("keyword")
        try:
            query_vector = self._embed(parsed.text)
            vector_raw = self.store.vector_candidates(
                query_vector, limit=candidates, entity_types=entity_types
            )
        except (SemanticUnavailableError, CorruptIndexError) as exc:
            logger.info("vector search unavailable; keyword-only ranking: %s", exc)
            response.degraded = True
            response.degraded_reasons.append("vector")

        keys = set(keyword_raw) | set(vector_raw)
        records = self.store.load_entities(keys)
        eligible = {
            key: record
            for key, record in records.items()
            if self._eligible(record, filters, kinds, project_ids)
        }
        keyword_scores = normalize_by_max(
            {key: score for key, score in keyword_raw.items() if key in eligible}
        )
        vector_scores = {key: score for key, score in vector_raw.items() if key in eligible}

        tokens = tokenize(parsed.text)
        hits = []
        for key, record in eligible.items():
            keyword = keyword_scores.get(key)
            vector = vector_scores.get(key)
            hits.append(
                SearchHit(
                    entity_type=record.entity_type,
                    entity_id=record.entity_id,
                    entity=record.data,
                    score=self.combine(keyword, vector),
                    snippet=make_snippet(record.text, tokens),
                    created_at=record.created_at,
                    keyword_score=keyword,
                    vector_score=vector,
                )
            )
        hits.sort(key=lambda hit: (hit.score, hit.created_at, hit.entity_id), reverse=True)
        response.results = hits[:limit]
        return response

    @staticmethod
    def _entity_types(parsed: ParsedQuery, filters: dict[str, Any]) -> list[str] | None:
        requested = set(parsed.entity_types)
        filter_types = filters.get("types") or filters.get("type")
        if isinstance(filter_types, str):
            filter_types = [filter_types]
        if filter_types:
            normalized = {_TYPE_ALIASES.get(str(t).lower(), str(t).lower()) for t in filter_types}
            requested = requested & normalized if requested else normalized
            if not requested:
                return []
        if not requested:
            return None
        return [t for t in ENTITY_TYPES if t in requested]

    @staticmethod
    def _eligible(
        record: EntityRecord,
        filters: dict[str, Any],
        kinds: set[str],
        project_ids: set[int] | None,
    ) -> bool:
        if project_ids is not None and record.project_id not in project_ids:
            return False
        if record.entity_type == "knowledge":
            if kinds and record.data.get("kind") not in kinds:
                return False
            if record.data.get("superseded_by") and not filters.get("include_superseded"):
                return False
        session_id = filters.get("session_id")
        if session_id is not None and record.session_id != int(session_id):
            return False
        since = filters.get("since")
        if since and record.created_at < str(since):
            return False
        return True
