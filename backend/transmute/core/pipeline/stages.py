"""
Analysis Stage Adapters
=======================

Wrap plain coroutine functions as analysis stages, with optional
fallbacks that produce a degraded result when the stage itself fails.
"""

from typing import Any, Awaitable, Callable, Optional

from transmute.core.pipeline.interfaces import Reporter

StageWork = Callable[[Reporter], Awaitable[dict[str, Any]]]
StageFallback = Callable[[Reporter, BaseException], Awaitable[dict[str, Any]]]

# Well-known analysis stages
CODE_ANALYSIS = "code_analysis"
APP_BEHAVIOUR = "app_behaviour"


class FunctionStage:
    """
    Analysis stage backed by a coroutine function.

    Usage:
        stage = FunctionStage("code_analysis", analyze_repo, required=True)
    """

    def __init__(
        self,
        name: str,
        work: StageWork,
        *,
        required: bool = False,
        fallback: Optional[StageFallback] = None,
    ):
        self.name = name
        self.required = required
        self._work = work
        self.fallback = fallback

    async def run(self, reporter: Reporter) -> dict[str, Any]:
        return await self._work(reporter)

    def __repr__(self) -> str:
        return f"<FunctionStage {self.name}{' required' if self.required else ''}>"


def static_fallback(result: dict[str, Any], note: str = "Using fallback analysis") -> StageFallback:
    """Fallback that reports the failure and returns a fixed result."""

    async def fallback(reporter: Reporter, error: BaseException) -> dict[str, Any]:
        await reporter.thought(f"{note}: {error}")
        return dict(result)

    return fallback
