"""Classification of raw step parameters into bound, unbound and deferred values.

Reasoning backends emit plan parameters as loose JSON. They are classified once,
when a draft is ingested, into :class:`LiteralValue`, :class:`Placeholder` or
:class:`StepReference`. Everything downstream works on the typed values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Sequence

from pydantic import TypeAdapter

from ..schemas.plans import LiteralValue, ParameterValue, Placeholder, PlanDraft, PlanStep, StepReference

_PARAMETER_ADAPTER: TypeAdapter[Any] = TypeAdapter(ParameterValue)

_REFERENCE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\{\{\s*steps?[\s_.\-]?(?P<order>\d+)(?:\.(?P<field>[\w.]+))?\s*\}\}$", re.IGNORECASE),
    re.compile(r"^\$\{?steps?[_.]?(?P<order>\d+)(?:\.(?P<field>[\w.]+))?\}?$", re.IGNORECASE),
    re.compile(
        r"^extract(?:ed)?[\s_]+from[\s_]+step[\s_]*(?P<order>\d+)(?:[\s_]+(?P<field>[a-z]\w*))?$",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:from|of)\s+step\s+(?P<order>\d+)\b", re.IGNORECASE),
)

_PLACEHOLDER_TOKENS: tuple[str, ...] = (
    "placeholder",
    "example",
    "required",
    "to be determined",
    "tbd",
    "todo",
    "your_",
    "xxx",
    "extracted_",
    "extracted from",
)

_GENERIC_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(?:test|sample|default|unknown|none|null|n/?a)(?:\s+\w+)?\s*$", re.IGNORECASE),
    re.compile(r"^<[^<>]+>$"),
    re.compile(r"^\[[^\[\]]+\]$"),
)

_DEFAULT_NUMBERS = {0, 1, 10, 50, 100, 123}
_QUANTITY_HINTS = ("size", "amount", "quantity", "count", "heating_value")


def _normalise_name(text: str) -> str:
    return re.sub(r"[^a-z0-9]", "", text.lower())


def _reference_from_text(text: str) -> StepReference | None:
    for pattern in _REFERENCE_PATTERNS:
        match = pattern.search(text)
        if match:
            order = int(match.group("order"))
            if order < 1:
                return None
            field = match.groupdict().get("field")
            return StepReference(step_order=order, field=field or None)
    return None


def _placeholder_reason(name: str, text: str) -> str | None:
    stripped = text.strip()
    if not stripped:
        return "empty value"
    lowered = stripped.lower()
    for token in _PLACEHOLDER_TOKENS:
        if token in lowered:
            return f"placeholder token '{token}'"
    for pattern in _GENERIC_PATTERNS:
        if pattern.match(stripped):
            return "generic filler text"
    if _normalise_name(stripped) == _normalise_name(name):
        return "restated parameter name"
    return None


def _is_default_number(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        return False
    lowered = name.lower()
    return value in _DEFAULT_NUMBERS and any(hint in lowered for hint in _QUANTITY_HINTS)


def classify_parameter(name: str, raw: Any) -> ParameterValue:
    """Turn one raw parameter value into its tagged form."""
    if isinstance(raw, (LiteralValue, Placeholder, StepReference)):
        return raw
    if isinstance(raw, Mapping) and raw.get("kind") in {"literal", "placeholder", "step_reference"}:
        return _PARAMETER_ADAPTER.validate_python(dict(raw))
    if raw is None:
        return Placeholder(reason="missing value")
    if isinstance(raw, str):
        reference = _reference_from_text(raw.strip())
        if reference is not None:
            return reference
        reason = _placeholder_reason(name, raw)
        if reason is not None:
            return Placeholder(reason=reason, raw=raw)
    if _is_default_number(name, raw):
        return Placeholder(reason="default number", raw=raw)
    return LiteralValue(value=raw)


def is_resolved(value: ParameterValue) -> bool:
    return value.is_bound


def _coerce_dependencies(raw: Any) -> list[int]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple, set)):
        raw = [raw]
    orders: list[int] = []
    for item in raw:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            orders.append(item)
            continue
        match = re.search(r"\d+", str(item))
        if match:
            orders.append(int(match.group()))
    return sorted(set(orders))


def draft_from_payload(payload: Mapping[str, Any]) -> PlanDraft:
    """Validate a backend plan payload, classifying every parameter value.

    Raises :class:`pydantic.ValidationError` when the payload is malformed.
    """
    raw_steps = payload.get("steps") or []
    steps: list[dict[str, Any]] = []
    for index, raw_step in enumerate(raw_steps, start=1):
        if not isinstance(raw_step, Mapping):
            continue
        raw_parameters = raw_step.get("parameters") or {}
        parameters = {
            str(name): classify_parameter(str(name), value)
            for name, value in (raw_parameters.items() if isinstance(raw_parameters, Mapping) else [])
        }
        steps.append(
            {
                "order": raw_step.get("order") or index,
                "action": raw_step.get("action") or raw_step.get("tool") or "",
                "description": raw_step.get("description") or "",
                "parameters": parameters,
                "dependencies": _coerce_dependencies(raw_step.get("dependencies")),
                "expected_outcome": raw_step.get("expected_outcome") or raw_step.get("expectedOutcome") or "",
            }
        )
    return PlanDraft.model_validate(
        {
            "goal": payload.get("goal") or "",
            "steps": steps,
            "confidence": payload.get("confidence", 0.5),
            "estimated_complexity": payload.get("estimated_complexity", payload.get("estimatedComplexity", 0.5)),
            "rationale": payload.get("rationale") or "",
        }
    )


class FindingKind(str, Enum):
    PLACEHOLDER = "placeholder"
    MISSING = "missing"
    DANGLING_REFERENCE = "dangling_reference"
    STEP_REFERENCE = "step_reference"


@dataclass(frozen=True, slots=True)
class ParameterFinding:
    step_order: int
    action: str
    parameter: str
    kind: FindingKind
    reason: str
    reference: StepReference | None = None

    @property
    def needs_user_input(self) -> bool:
        return self.kind is not FindingKind.STEP_REFERENCE

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "step_order": self.step_order,
            "action": self.action,
            "parameter": self.parameter,
            "kind": self.kind.value,
            "reason": self.reason,
        }
        if self.reference is not None:
            payload["reference"] = self.reference.model_dump()
        return payload


def _scan_step(
    step: PlanStep,
    plan: PlanDraft,
    required: Sequence[str],
) -> list[ParameterFinding]:
    findings: list[ParameterFinding] = []
    for name in sorted(step.parameters):
        value = step.parameters[name]
        if isinstance(value, Placeholder):
            findings.append(
                ParameterFinding(step.order, step.action, name, FindingKind.PLACEHOLDER, value.reason)
            )
        elif isinstance(value, StepReference):
            if value.step_order < step.order and plan.step(value.step_order) is not None:
                findings.append(
                    ParameterFinding(
                        step.order,
                        step.action,
                        name,
                        FindingKind.STEP_REFERENCE,
                        f"bound at execution time from step {value.step_order}",
                        value,
                    )
                )
            else:
                findings.append(
                    ParameterFinding(
                        step.order,
                        step.action,
                        name,
                        FindingKind.DANGLING_REFERENCE,
                        f"references step {value.step_order}, which does not run before step {step.order}",
                        value,
                    )
                )
    for name in sorted(set(required) - set(step.parameters)):
        findings.append(ParameterFinding(step.order, step.action, name, FindingKind.MISSING, "required parameter absent"))
    return findings


def scan_plan(
    plan: PlanDraft,
    required_parameters: Mapping[str, Sequence[str]] | None = None,
) -> list[ParameterFinding]:
    """List every parameter that is not a bound literal, in step then name order."""
    catalog = required_parameters or {}
    findings: list[ParameterFinding] = []
    for step in plan.steps:
        findings.extend(_scan_step(step, plan, catalog.get(step.action, ())))
    return sorted(findings, key=lambda finding: (finding.step_order, finding.parameter))


def bind_parameters(plan: PlanDraft, bindings: Mapping[tuple[int, str], str]) -> PlanDraft:
    """Return a copy of ``plan`` with the given ``(step_order, parameter)`` slots bound to literals."""
    draft = plan.content()
    for (order, name), answer in bindings.items():
        step = draft.step(order)
        if step is None:
            continue
        step.parameters[name] = LiteralValue(value=answer)
    return draft
