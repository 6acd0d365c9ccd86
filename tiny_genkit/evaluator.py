"""评估器 - 对数据集逐条打分的 Action"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional, Union
from uuid import uuid4

from pydantic import Field

from .action import Action, ActionKind, _accepts_context, _is_async_callable
from .context import ActionContext
from .errors import CancellationError
from .models.llm_request import GenkitModel

if TYPE_CHECKING:
    from .registry import Registry

logger = logging.getLogger(__name__)


class BaseEvalDataPoint(GenkitModel):
    """数据集中的一条测试用例"""

    input: Any = None
    output: Any = None
    context: Optional[list[Any]] = None
    reference: Any = None
    test_case_id: str = Field(default_factory=lambda: str(uuid4()))
    trace_ids: Optional[list[str]] = None


class ScoreDetails(GenkitModel):
    reasoning: Optional[str] = None


class Score(GenkitModel):
    """
    单项评分

    error 不为空表示这条用例评估失败（其他用例照常评估）
    """

    id: Optional[str] = None
    score: Union[float, str, bool, None] = None
    status: Optional[str] = None
    error: Optional[str] = None
    details: Optional[ScoreDetails] = None


class EvalResponse(GenkitModel):
    """一条用例的评估结果"""

    test_case_id: str
    sample_index: Optional[int] = None
    trace_id: Optional[str] = None
    evaluation: Union[Score, list[Score]]


class EvalRequest(GenkitModel):
    dataset: list[BaseEvalDataPoint] = Field(default_factory=list)
    eval_run_id: Optional[str] = None
    options: Any = None


EvaluatorFn = Callable[..., Any]


def evaluator_action(
    name: str,
    fn: EvaluatorFn,
    *,
    display_name: str = "",
    definition: str = "",
    is_billed: bool = False,
) -> Action:
    """
    创建 evaluator 类型的 Action（不注册，可放进 Plugin.evaluators）

    处理函数签名: fn(datapoint: BaseEvalDataPoint[, ctx]) -> EvalResponse | Score
    用例按顺序逐条评估。
    """
    accepts_context = _accepts_context(fn)
    is_async = _is_async_callable(fn)

    async def score_one(datapoint: BaseEvalDataPoint, ctx: ActionContext) -> Any:
        args = (datapoint, ctx) if accepts_context else (datapoint,)
        if is_async:
            return await fn(*args)
        return await asyncio.to_thread(fn, *args)

    async def handler(request: EvalRequest, ctx: ActionContext) -> list[EvalResponse]:
        responses = []
        for index, datapoint in enumerate(request.dataset):
            ctx.signal.raise_if_cancelled()
            try:
                result = await score_one(datapoint, ctx)
                response = _to_eval_response(result, datapoint)
            except CancellationError:
                raise
            except Exception as e:
                logger.warning(f"[Evaluator {name}] test case {datapoint.test_case_id} failed: {e}")
                response = EvalResponse(
                    test_case_id=datapoint.test_case_id,
                    evaluation=Score(
                        error=f"Evaluation of test case {datapoint.test_case_id} failed: {e}",
                    ),
                )
            response.sample_index = index
            response.trace_id = ctx.trace_id
            responses.append(response)
        return responses

    return Action(
        ActionKind.EVALUATOR,
        name,
        handler,
        description=definition,
        input_schema=EvalRequest,
        output_schema=list[EvalResponse],
        metadata={
            'evaluator': {
                'displayName': display_name or name,
                'definition': definition,
                'isBilled': is_billed,
            },
        },
    )


def define_evaluator(
    registry: 'Registry',
    name: str,
    fn: EvaluatorFn,
    *,
    display_name: str = "",
    definition: str = "",
    is_billed: bool = False,
) -> Action:
    """创建并注册一个评估器"""
    action = evaluator_action(
        name, fn, display_name=display_name, definition=definition, is_billed=is_billed,
    )
    return registry.register_action(action)


def _to_eval_response(result: Any, datapoint: BaseEvalDataPoint) -> EvalResponse:
    if isinstance(result, EvalResponse):
        return result
    if isinstance(result, Score):
        return EvalResponse(test_case_id=datapoint.test_case_id, evaluation=result)
    if isinstance(result, (bool, int, float, str)):
        return EvalResponse(test_case_id=datapoint.test_case_id, evaluation=Score(score=result))
    if isinstance(result, dict) and 'evaluation' in result:
        data = dict(result)
        if 'testCaseId' not in data and 'test_case_id' not in data:
            data['testCaseId'] = datapoint.test_case_id
        return EvalResponse.model_validate(data)
    return EvalResponse(test_case_id=datapoint.test_case_id, evaluation=Score.model_validate(result))
