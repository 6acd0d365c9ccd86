"""
Tests for evaluators
"""

import pytest

from tiny_genkit import ActionKind, define_evaluator
from tiny_genkit.evaluator import BaseEvalDataPoint, EvalRequest, EvalResponse, Score


def exact_match(datapoint: BaseEvalDataPoint) -> Score:
    if datapoint.reference is None:
        raise ValueError("missing reference")
    return Score(score=datapoint.output == datapoint.reference)


class TestEvaluator:

    def test_metadata(self, registry):
        action = define_evaluator(registry, "exact", exact_match, display_name="Exact", definition="完全一致")
        assert action.kind == ActionKind.EVALUATOR
        assert action.metadata["evaluator"] == {"displayName": "Exact", "definition": "完全一致", "isBilled": False}

    @pytest.mark.asyncio
    async def test_scores_each_datapoint(self, registry):
        action = define_evaluator(registry, "exact", exact_match)

        responses = await action.run({"dataset": [
            {"testCaseId": "t1", "output": "a", "reference": "a"},
            {"testCaseId": "t2", "output": "a", "reference": "b"},
        ]})

        assert [(r.test_case_id, r.sample_index, r.evaluation.score) for r in responses] == [
            ("t1", 0, True),
            ("t2", 1, False),
        ]
        assert all(r.trace_id for r in responses)

    @pytest.mark.asyncio
    async def test_failing_datapoint_does_not_abort(self, registry):
        action = define_evaluator(registry, "exact", exact_match)

        responses = await action.run(EvalRequest(dataset=[
            BaseEvalDataPoint(test_case_id="bad", output="x"),
            BaseEvalDataPoint(test_case_id="good", output="x", reference="x"),
        ]))

        bad, good = responses
        assert bad.evaluation.error == "Evaluation of test case bad failed: missing reference"
        assert bad.evaluation.score is None
        assert good.evaluation.score is True

    @pytest.mark.asyncio
    async def test_scalar_and_dict_results(self, registry):
        async def length(datapoint, ctx):
            if datapoint.test_case_id == "dict":
                return {"evaluation": {"score": 0.5, "details": {"reasoning": "half"}}}
            return len(datapoint.output)

        action = define_evaluator(registry, "length", length)
        scalar, as_dict = await action.run({"dataset": [
            {"testCaseId": "scalar", "output": "abc"},
            {"testCaseId": "dict"},
        ]})

        assert scalar.evaluation.score == 3
        assert isinstance(as_dict, EvalResponse)
        assert as_dict.test_case_id == "dict"
        assert as_dict.evaluation.details.reasoning == "half"
