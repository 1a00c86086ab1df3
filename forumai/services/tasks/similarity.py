from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forumai.core.errors import DuplicateContentError, ValidationError
from forumai.ingestion.embeddings import cosine_similarity, embed_text
from forumai.persistence.repos import tasks as tasks_repo


logger = logging.getLogger(__name__)

ALL_SCOPES = "*"

Fingerprinter = Callable[[str], list[float]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SimilarityVerdict:
    duplicate: bool
    # Highest similarity found, 0-100.
    best_score: float
    matched_id: str | None = None


def similarity_score(left: list[float], right: list[float]) -> float:
    # Cosine similarity as a 0-100 score; opposite vectors count as 0.
    return max(0.0, cosine_similarity(left, right)) * 100.0


class SimilarityGuard:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        fingerprinter: Fingerprinter | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._sessions = session_factory
        self._fingerprint = fingerprinter or embed_text
        self._now = time_provider or _utc_now

    async def check(
        self,
        candidate_text: str,
        scope: str,
        lookback_days: int,
        threshold: float,
    ) -> SimilarityVerdict:
        # Compare against remembered content in scope within the lookback window.
        if not 0 <= threshold <= 100:
            raise ValidationError("similarity threshold must be within 0-100", field="similarity_threshold")
        if lookback_days < 0:
            raise ValidationError("lookback days cannot be negative", field="duplicate_check_days")
        since = self._now() - timedelta(days=lookback_days) if lookback_days > 0 else None
        async with self._sessions() as session:
            prior = await tasks_repo.list_generated_content(
                session,
                scope=None if scope == ALL_SCOPES else scope,
                since=since,
            )
        if not prior:
            return SimilarityVerdict(duplicate=False, best_score=0.0)

        candidate = self._fingerprint(candidate_text)
        best_score = 0.0
        matched_id: str | None = None
        for row in prior:
            score = similarity_score(candidate, list(row.fingerprint))
            if score > best_score:
                best_score, matched_id = score, row.id
        duplicate = best_score >= threshold
        if duplicate:
            logger.info("similarity_duplicate scope=%s score=%.1f matched_id=%s", scope, best_score, matched_id)
        return SimilarityVerdict(duplicate=duplicate, best_score=best_score, matched_id=matched_id)

    async def is_duplicate(self, candidate_text: str, scope: str, lookback_days: int, threshold: float) -> bool:
        verdict = await self.check(candidate_text, scope, lookback_days, threshold)
        return verdict.duplicate

    async def ensure_unique(self, candidate_text: str, scope: str, lookback_days: int, threshold: float) -> SimilarityVerdict:
        # Raise DuplicateContentError when the candidate is too close.
        verdict = await self.check(candidate_text, scope, lookback_days, threshold)
        if verdict.duplicate:
            raise DuplicateContentError(
                f"content is {verdict.best_score:.0f}% similar to recent content",
                best_score=verdict.best_score,
                matched_id=verdict.matched_id,
            )
        return verdict

    async def remember(self, text: str, scope: str, *, task_id: int | None = None) -> str:
        # Store the text and its fingerprint for later checks.
        async with self._sessions() as session:
            row = await tasks_repo.add_generated_content(
                session,
                scope=scope,
                task_id=task_id,
                text=text,
                fingerprint=self._fingerprint(text),
                created_at=self._now(),
            )
            await session.commit()
            return row.id
