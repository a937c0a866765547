"""
Feature Map Planner
===================

Local planner used when no planning service is configured: one slice
per feature found by code analysis, in discovery order.
"""

from typing import Any

from transmute.core.pipeline.stages import CODE_ANALYSIS
from transmute.core.schemas import SlicePlan


class FeatureMapPlanner:
    """
    Plans slices from `featureMap.features` of the code analysis result.

    A feature is either a name or an object with `name`, `description`,
    `dependencies` (feature names), `files` and `test_count`.
    """

    async def plan(self, project: Any, stage_results: dict[str, dict[str, Any]]) -> list[SlicePlan]:
        analysis = stage_results.get(CODE_ANALYSIS) or {}
        features = (analysis.get("featureMap") or {}).get("features") or analysis.get("features") or []

        plans = []
        for index, feature in enumerate(features):
            if isinstance(feature, str):
                feature = {"name": feature}
            if not isinstance(feature, dict) or not feature.get("name"):
                continue

            code_contract = {
                key: feature[key] for key in ("files", "test_count") if key in feature
            }
            plans.append(
                SlicePlan(
                    name=str(feature["name"]),
                    description=feature.get("description"),
                    priority=int(feature.get("priority", index + 1)),
                    dependencies=[str(dep) for dep in feature.get("dependencies", [])],
                    behavioral_contract={"behaviors": feature.get("behaviors", [])},
                    code_contract=code_contract,
                )
            )
        return plans
