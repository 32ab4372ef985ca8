from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, Literal

from .errors import SemanticUnavailableError
from .semantic import cosine_similarity, embed_vectors, normalize
from .store import Conversation, MemoryStore

if TYPE_CHECKING:
    from .config import EngramConfig

logger = logging.getLogger(__name__)

ACTION_IGNORE: Final = "ignore"
ACTION_ASK: Final = "ask"
ACTION_TRUST: Final = "trust"

TopicAction = Literal["ignore", "ask", "trust"]


@dataclass(frozen=True)
class TopicShiftResult:
    action: TopicAction
    score: float
    conversation: Conversation | None
    suggestion: str | None = None


def make_topic_label(text: str, max_chars: int = 60) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= max_chars:
        return collapsed
    cut = collapsed[: max_chars - 3].rsplit(" ", 1)[0] or collapsed[: max_chars - 3]
    return cut.rstrip(" ,.;:") + "..."


def update_centroid(
    centroid: Sequence[float], vector: Sequence[float], count: int, window: int
) -> list[float]:
    """Running mean over the first ``window`` prompts, exponential after that."""

    if len(centroid) != len(vector):
        return normalize(vector)
    n = min(count + 1, window)
    return normalize([c + (v - c) / n for c, v in zip(centroid, vector, strict=True)])


def _embed_one(text: str) -> list[float]:
    return embed_vectors([text])[0]


class ConversationContinuity:
    """Decides per prompt whether the open conversation continues.

    Scores a prompt against the open conversation's running topic centroid
    and maps the score through ``low_threshold < high_threshold`` to ignore,
    ask or trust. Only trust (or an explicit confirm/close) changes which
    conversation is open. Failures degrade to ignore.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        low_threshold: float = 0.4,
        high_threshold: float = 0.75,
        window: int = 10,
        timeout_s: float = 2.0,
        label_max_chars: int = 60,
        embed: Callable[[str], Sequence[float]] | None = None,
    ) -> None:
        if not 0.0 <= low_threshold < high_threshold <= 1.0:
            raise ValueError("thresholds must satisfy 0 <= low < high <= 1")
        self.store = store
        self.low_threshold = low_threshold
        self.high_threshold = high_threshold
        self.window = window
        self.timeout_s = timeout_s
        self.label_max_chars = label_max_chars
        self._embed = embed or _embed_one
        self._executor: ThreadPoolExecutor | None = None
        self._open: dict[int, int] = {}

    @classmethod
    def from_config(cls, store: MemoryStore, cfg: EngramConfig) -> ConversationContinuity:
        return cls(
            store,
            low_threshold=cfg.topic_low_threshold,
            high_threshold=cfg.topic_high_threshold,
            window=cfg.topic_window,
            timeout_s=cfg.topic_timeout_s,
            label_max_chars=cfg.topic_label_max_chars,
        )

    def classify(self, score: float) -> TopicAction:
        if score >= self.high_threshold:
            return ACTION_IGNORE
        if score >= self.low_threshold:
            return ACTION_ASK
        return ACTION_TRUST

    def current_conversation_id(self, session_id: int) -> int | None:
        if session_id in self._open:
            return self._open[session_id]
        current = self.store.open_conversation_for(session_id)
        if current is None:
            return None
        self._open[session_id] = current.id
        return current.id

    def handle_topic_shift(
        self,
        session_id: int,
        project_root_path: str,
        project_id: int,
        prompt_text: str,
    ) -> TopicShiftResult:
        try:
            return self._handle(session_id, project_root_path, project_id, prompt_text)
        except Exception as exc:
            logger.warning(
                "topic shift detection failed; ignoring (session=%s project=%s)",
                session_id,
                project_root_path,
                exc_info=exc,
            )
            return TopicShiftResult(ACTION_IGNORE, 1.0, self._safe_current(session_id))

    def _safe_current(self, session_id: int) -> Conversation | None:
        try:
            return self.store.open_conversation_for(session_id)
        except Exception:
            logger.debug("open conversation lookup failed", exc_info=True)
            return None

    def _handle(
        self,
        session_id: int,
        project_root_path: str,
        project_id: int,
        prompt_text: str,
    ) -> TopicShiftResult:
        text = prompt_text.strip()
        current = self.store.open_conversation_for(session_id)
        if not text:
            return TopicShiftResult(ACTION_IGNORE, 1.0, current)
        try:
            vector = self._represent(text)
        except SemanticUnavailableError as exc:
            logger.warning("topic representation unavailable; ignoring prompt: %s", exc)
            return TopicShiftResult(ACTION_IGNORE, 1.0, current)

        if current is None:
            conversation = self._start(session_id, text, vector)
            logger.info(
                "conversation started (session=%s project=%s topic=%r)",
                session_id,
                project_root_path,
                conversation.topic_label,
            )
            return TopicShiftResult(ACTION_IGNORE, 1.0, conversation)
        if not current.topic_representation:
            conversation = self.store.update_topic(current.id, vector, current.prompt_count + 1)
            return TopicShiftResult(ACTION_IGNORE, 1.0, conversation)

        score = min(1.0, max(0.0, cosine_similarity(vector, current.topic_representation)))
        action = self.classify(score)
        if action == ACTION_IGNORE:
            conversation = self._absorb(current, vector)
            return TopicShiftResult(ACTION_IGNORE, score, conversation)
        if action == ACTION_ASK:
            label = make_topic_label(text, self.label_max_chars)
            suggestion = (
                f'This prompt may start a new topic (similarity {score:.2f} to '
                f'"{current.topic_label}"). Start a new conversation for "{label}"?'
            )
            return TopicShiftResult(ACTION_ASK, score, current, suggestion)
        conversation = self._start(session_id, text, vector)
        logger.info(
            "topic shift: closed conversation %s, opened %s (score=%.3f project_id=%s)",
            current.id,
            conversation.id,
            score,
            project_id,
        )
        return TopicShiftResult(ACTION_TRUST, score, conversation)

    def confirm_shift(self, session_id: int, prompt_text: str) -> Conversation:
        """Caller accepted an ``ask`` suggestion: close the thread and open a new one."""

        text = prompt_text.strip()
        try:
            vector = self._represent(text) if text else []
        except SemanticUnavailableError as exc:
            logger.warning("topic representation unavailable for confirmed shift: %s", exc)
            vector = []
        return self._start(session_id, text or "untitled", vector)

    def reject_shift(self, session_id: int, prompt_text: str) -> Conversation | None:
        """Caller declined an ``ask`` suggestion: the prompt joins the open thread."""

        current = self.store.open_conversation_for(session_id)
        if current is None or not prompt_text.strip():
            return current
        try:
            vector = self._represent(prompt_text.strip())
        except SemanticUnavailableError as exc:
            logger.warning("topic representation unavailable; centroid unchanged: %s", exc)
            return current
        return self._absorb(current, vector)

    def close_for_session(self, session_id: int) -> None:
        current = self.store.open_conversation_for(session_id)
        if current is not None:
            self.store.close_conversation(current.id)
        self._open.pop(session_id, None)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def _start(self, session_id: int, text: str, vector: Sequence[float]) -> Conversation:
        label = make_topic_label(text, self.label_max_chars)
        conversation = self.store.start_conversation(session_id, label, vector)
        self._open[session_id] = conversation.id
        return conversation

    def _absorb(self, current: Conversation, vector: Sequence[float]) -> Conversation:
        centroid = update_centroid(
            current.topic_representation, vector, current.prompt_count, self.window
        )
        return self.store.update_topic(current.id, centroid, current.prompt_count + 1)

    def _represent(self, text: str) -> list[float]:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="engram-topic")
        future = self._executor.submit(self._embed, text)
        try:
            vector = future.result(timeout=self.timeout_s)
        except TimeoutError as exc:
            future.cancel()
            raise SemanticUnavailableError(
                "topic representation timed out", {"timeout_s": self.timeout_s}
            ) from exc
        except SemanticUnavailableError:
            raise
        except Exception as exc:
            raise SemanticUnavailableError("topic representation failed") from exc
        if not vector:
            raise SemanticUnavailableError("topic representation was empty")
        return normalize(vector)
