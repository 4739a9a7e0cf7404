"""Reasoning backend contract and the LLM-backed implementation.

Each agent is a black box: it receives a JSON-serialisable context and returns a
JSON object. Backends signal failure with :class:`UpstreamError`.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Callable, Mapping, Protocol, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from ..core.exceptions import UpstreamError
from ..core.logging import get_logger
from .llm import LLMService

logger = get_logger(name=__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
ResultT = TypeVar("ResultT")


class AgentKind(str, Enum):
    COMPLEXITY = "complexity-detector"
    THOUGHT = "thought-agent"
    PLANNER = "planner-agent"
    CRITIC = "critic-agent"
    CONFIDENCE = "confidence-scorer"
    META = "meta-agent"
    REPLAN = "replan-agent"
    EXECUTOR = "executor-agent"
    SUMMARY = "summary-agent"


class ReasoningBackend(Protocol):
    async def invoke(self, kind: AgentKind, context: Mapping[str, Any]) -> Mapping[str, Any]:
        ...


async def invoke_parsed(
    backend: ReasoningBackend,
    kind: AgentKind,
    context: Mapping[str, Any],
    parser: Callable[[Mapping[str, Any]], ResultT],
    *,
    request_id: str | None = None,
) -> ResultT:
    """Invoke ``backend`` and parse the result, reporting malformed output as upstream failure."""
    try:
        raw = await backend.invoke(kind, context)
    except UpstreamError as exc:
        if exc.agent is None:
            exc.agent = kind.value
        if exc.request_id is None:
            exc.request_id = request_id
        raise
    try:
        return parser(dict(raw))
    except (PydanticValidationError, TypeError, ValueError) as exc:
        logger.warning("agent_result_invalid", agent=kind.value, request_id=request_id, error=str(exc))
        raise UpstreamError(
            f"{kind.value} returned an invalid result: {exc}",
            agent=kind.value,
            request_id=request_id,
        ) from exc


async def invoke_structured(
    backend: ReasoningBackend,
    kind: AgentKind,
    context: Mapping[str, Any],
    model: type[ModelT],
    *,
    request_id: str | None = None,
) -> ModelT:
    return await invoke_parsed(backend, kind, context, model.model_validate, request_id=request_id)


_OUTPUT_SHAPES: dict[AgentKind, str] = {
    AgentKind.THOUGHT: (
        '{"primary_approach": str, "reasoning": [str], "key_insights": [str], '
        '"recommended_tools": [str], "confidence": float}'
    ),
    AgentKind.PLANNER: (
        '{"goal": str, "confidence": float, "estimated_complexity": float, "rationale": str, '
        '"steps": [{"order": int, "action": str, "description": str, "parameters": {str: any}, '
        '"dependencies": [int], "expected_outcome": str}]}'
    ),
    AgentKind.CRITIC: (
        '{"feasibility": float, "correctness": float, "efficiency": float, "safety": float, '
        '"rationale": str, "strengths": [str], '
        '"issues": [{"severity": "low|medium|high|critical", "description": str, "affected_steps": [int]}], '
        '"questions": [{"question": str, "category": "ambiguity|risk|clarification", '
        '"priority": "low|medium|high", "step_order": int|null}]}'
    ),
    AgentKind.META: (
        '{"should_replan": bool, "replan_strategy": str, "focus_steps": [int], '
        '"directives": [str], "rationale": str}'
    ),
    AgentKind.REPLAN: (
        '{"goal": str, "confidence": float, "estimated_complexity": float, "rationale": str, '
        '"steps": [{"order": int, "action": str, "description": str, "parameters": {str: any}, '
        '"dependencies": [int], "expected_outcome": str}]}'
    ),
    AgentKind.EXECUTOR: (
        '{"overall_success": bool, "errors": [str], '
        '"steps": [{"order": int, "status": "completed|failed|skipped", "output": any, "error": str|null}]}'
    ),
    AgentKind.SUMMARY: '{"summary": str, "key_points": [str], "confidence": float}',
}

_ROLES: dict[AgentKind, str] = {
    AgentKind.THOUGHT: "Think through how to answer the user's query before any plan is written.",
    AgentKind.PLANNER: (
        "Turn the reasoning into ordered tool steps. Use {{step_N.field}} for values produced by "
        "an earlier step and null for values only the user can supply."
    ),
    AgentKind.CRITIC: "Score the plan for feasibility, correctness, efficiency and safety between 0 and 1.",
    AgentKind.META: "Review the plan, critique and confidence and decide how the plan should be reworked.",
    AgentKind.REPLAN: "Produce a revised plan that fixes the critique's issues and follows the guidance.",
    AgentKind.EXECUTOR: "Execute the plan steps in order and report each step's outcome.",
    AgentKind.SUMMARY: "Summarise the execution results for the user.",
}


def parse_json_object(text: str) -> dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise UpstreamError("agent response did not contain JSON") from None
        try:
            payload = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise UpstreamError(f"agent response contained malformed JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise UpstreamError("agent response must be a JSON object")
    return payload


class LLMReasoningBackend:
    """Runs every agent kind through one chat model."""

    def __init__(self, llm: LLMService, *, max_tokens: int | None = 2048) -> None:
        self._llm = llm
        self._max_tokens = max_tokens

    async def invoke(self, kind: AgentKind, context: Mapping[str, Any]) -> Mapping[str, Any]:
        shape = _OUTPUT_SHAPES.get(kind)
        if shape is None:
            raise UpstreamError(f"{kind.value} has no LLM prompt", agent=kind.value)
        prompt = (
            f"{_ROLES[kind]}\n\n"
            f"Context:\n{json.dumps(dict(context), indent=2, default=str)}\n\n"
            f"Respond with one JSON object shaped like:\n{shape}"
        )
        text = await self._llm.generate(
            prompt,
            system_prompt=f"You are the {kind.value} of a planning pipeline. Reply with JSON only.",
            max_tokens=self._max_tokens,
        )
        try:
            return parse_json_object(text)
        except UpstreamError as exc:
            exc.agent = kind.value
            logger.warning("agent_response_unparseable", agent=kind.value, preview=text[:200])
            raise
