from __future__ import annotations

from ..schemas.agents import ComplexityResult

MULTI_STEP_KEYWORDS = (
    "then", "after", "next", "follow", "sequence", "step", "first", "second", "finally",
)
ANALYSIS_KEYWORDS = (
    "analyze", "analyse", "compare", "evaluate", "assess", "examine", "review", "study",
    "investigate", "break down", "analysis", "performance", "trends", "patterns", "correlation",
)
AGGREGATION_KEYWORDS = (
    "all", "every", "total", "summarize", "summarise", "overview", "summary", "across",
    "combined", "aggregate", "consolidate", "comprehensive", "entire", "complete",
)
OPERATION_KEYWORDS = (
    "report", "generate", "risk", "suggest", "recommend", "improve", "schedule", "update",
    "create", "delete", "inspect", "contract", "shipment", "facility",
)

WEIGHTS = {
    "query_length": 0.15,
    "multiple_questions": 0.10,
    "multi_step": 0.20,
    "analysis": 0.25,
    "aggregation": 0.15,
    "operations": 0.15,
}

SIMPLE_THRESHOLD = 0.4
COMPLEX_THRESHOLD = 0.7


def _normalise(value: float, lower: float, upper: float) -> float:
    if upper <= lower:
        return 0.0
    return max(0.0, min(1.0, (value - lower) / (upper - lower)))


def _matches(query: str, keywords: tuple[str, ...]) -> list[str]:
    words = set(query.replace("?", " ").replace(",", " ").replace(".", " ").split())
    return [keyword for keyword in keywords if (keyword in query if " " in keyword else keyword in words)]


def detect_complexity(query: str) -> ComplexityResult:
    """Score how much reasoning a query needs using keyword heuristics."""
    lowered = query.lower()
    multi_step = _matches(lowered, MULTI_STEP_KEYWORDS)
    analysis = _matches(lowered, ANALYSIS_KEYWORDS)
    aggregation = _matches(lowered, AGGREGATION_KEYWORDS)
    operations = _matches(lowered, OPERATION_KEYWORDS)

    factors: dict[str, float | bool] = {
        "query_length": round(_normalise(len(query), 0, 500), 4),
        "multiple_questions": query.count("?") > 1,
        "multi_step": bool(multi_step),
        "analysis": bool(analysis),
        "aggregation": bool(aggregation),
        "operations": round(_normalise(len(operations), 0, 5), 4),
    }
    score = sum(float(factors[name]) * weight for name, weight in WEIGHTS.items())
    score = round(max(0.0, min(1.0, score)), 4)

    if score > COMPLEX_THRESHOLD:
        passes = 3
    elif score > SIMPLE_THRESHOLD:
        passes = 2
    else:
        passes = 1

    return ComplexityResult(
        score=score,
        reasoning_passes=passes,
        factors=factors,
        detected_keywords=list(dict.fromkeys(multi_step + analysis + aggregation + operations)),
    )
