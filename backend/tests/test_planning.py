"""
Feature Map Planner Tests
=========================
"""

from transmute.core.pipeline.planning import FeatureMapPlanner


class TestFeatureMapPlanner:
    """Slices from code analysis feature maps."""

    async def test_features_become_ordered_slices(self):
        analysis = {
            "featureMap": {
                "features": [
                    "Auth",
                    {
                        "name": "Invoices",
                        "description": "Create and send invoices",
                        "dependencies": ["Auth"],
                        "files": ["src/invoices/api.ts"],
                        "test_count": 4,
                        "behaviors": ["lists unpaid invoices"],
                    },
                ]
            }
        }

        plans = await FeatureMapPlanner().plan(None, {"code_analysis": analysis})

        assert [(p.name, p.priority) for p in plans] == [("Auth", 1), ("Invoices", 2)]
        assert plans[1].dependencies == ["Auth"]
        assert plans[1].code_contract == {"files": ["src/invoices/api.ts"], "test_count": 4}
        assert plans[1].behavioral_contract == {"behaviors": ["lists unpaid invoices"]}

    async def test_flat_feature_list(self):
        plans = await FeatureMapPlanner().plan(None, {"code_analysis": {"features": ["Reports"]}})

        assert [p.name for p in plans] == ["Reports"]

    async def test_unnamed_features_are_skipped(self):
        analysis = {"features": [{"description": "no name"}, 42, {"name": "Auth", "priority": 7}]}

        plans = await FeatureMapPlanner().plan(None, {"code_analysis": analysis})

        assert [(p.name, p.priority) for p in plans] == [("Auth", 7)]

    async def test_no_analysis(self):
        assert await FeatureMapPlanner().plan(None, {}) == []
