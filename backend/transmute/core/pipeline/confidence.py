"""
Confidence Aggregation
======================

Keeps slice and project confidence scores inside [0, 1] and computes the
weighted final score of a finished slice. Makes no pipeline decisions.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from transmute.core.config import Settings, settings as default_settings
from transmute.core.models import Project, VerticalSlice
from transmute.core.pipeline.errors import ProjectNotFound, SliceNotFound

logger = logging.getLogger(__name__)


def clamp_score(previous: float, delta: float) -> float:
    """Apply a delta and clamp the result to [0, 1]."""
    return max(0.0, min(1.0, previous + delta))


@dataclass(frozen=True)
class ScoreTarget:
    """Addresses a slice score, or the project score when slice_id is None."""
    project_id: UUID
    slice_id: Optional[UUID] = None


@dataclass
class ConfidenceSummary:
    """Signals gathered while building a slice."""
    unit_passed: int = 0
    unit_total: int = 0
    e2e_passed: int = 0
    e2e_total: int = 0
    visual_match: Optional[float] = None       # percent
    behavioral_match: Optional[float] = None   # percent
    video_similarity: Optional[float] = None   # 0-1


def calculate_confidence(summary: ConfidenceSummary, config: Optional[Settings] = None) -> float:
    """
    Weighted final confidence of a slice.

    Signals that were not measured fall back to configured defaults.

    Args:
        summary: Test and verification signals for the slice
        config: Settings to read weights from

    Returns:
        Score in [0, 1]
    """
    cfg = config or default_settings

    unit_rate = summary.unit_passed / summary.unit_total if summary.unit_total > 0 else 0.0
    e2e_rate = summary.e2e_passed / summary.e2e_total if summary.e2e_total > 0 else 0.0
    visual = cfg.DEFAULT_VISUAL_MATCH if summary.visual_match is None else summary.visual_match
    behavioral = (
        cfg.DEFAULT_BEHAVIORAL_MATCH if summary.behavioral_match is None else summary.behavioral_match
    )
    video = cfg.DEFAULT_VIDEO_SIMILARITY if summary.video_similarity is None else summary.video_similarity

    confidence = (
        unit_rate * cfg.WEIGHT_UNIT
        + e2e_rate * cfg.WEIGHT_E2E
        + (visual / 100) * cfg.WEIGHT_VISUAL
        + (behavioral / 100) * cfg.WEIGHT_BEHAVIORAL
        + video * cfg.WEIGHT_VIDEO
    )
    return clamp_score(confidence, 0.0)


class ConfidenceAggregator:
    """Reads and adjusts persisted confidence scores."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self.config = config or default_settings

    async def _load_target(self, session: AsyncSession, target: ScoreTarget) -> Project | VerticalSlice:
        if target.slice_id is not None:
            vertical_slice = await session.get(VerticalSlice, target.slice_id)
            if vertical_slice is None or vertical_slice.project_id != target.project_id:
                raise SliceNotFound(f"Slice {target.slice_id} not found")
            return vertical_slice

        project = await session.get(Project, target.project_id)
        if project is None:
            raise ProjectNotFound(f"Project {target.project_id} not found")
        return project

    async def apply_delta_in_session(
        self,
        session: AsyncSession,
        target: ScoreTarget,
        delta: float,
    ) -> float:
        """Apply a delta inside the caller's transaction. Does not commit."""
        row = await self._load_target(session, target)
        previous = row.confidence_score or 0.0
        row.confidence_score = clamp_score(previous, delta)
        logger.debug(f"Confidence {previous:.3f} -> {row.confidence_score:.3f} for {target}")
        return row.confidence_score

    async def apply_delta(self, target: ScoreTarget, delta: float) -> float:
        """
        Apply a delta to a slice or project score.

        Returns:
            The clamped new score
        """
        async with self._session_factory() as session:
            score = await self.apply_delta_in_session(session, target, delta)
            await session.commit()
            return score

    async def set_score(self, target: ScoreTarget, value: float) -> float:
        """Overwrite a score, clamped to [0, 1]."""
        async with self._session_factory() as session:
            row = await self._load_target(session, target)
            row.confidence_score = clamp_score(value, 0.0)
            await session.commit()
            return row.confidence_score

    async def score(self, target: ScoreTarget) -> float:
        async with self._session_factory() as session:
            row = await self._load_target(session, target)
            return row.confidence_score or 0.0

    async def is_complete(self, target: ScoreTarget) -> bool:
        """True once the score has reached the confidence threshold."""
        return await self.score(target) >= self.config.CONFIDENCE_THRESHOLD
