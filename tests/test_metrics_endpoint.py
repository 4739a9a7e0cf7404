from __future__ import annotations

import httpx
import pytest

from planwright.core.metrics import (
    increment_feedback_regression,
    increment_storage_write_failure,
    observe_agent_step,
    record_confidence_decision,
)


@pytest.mark.asyncio
async def test_metrics_endpoint_includes_pipeline_series() -> None:
    from planwright import main

    observe_agent_step(agent="critic-agent", outcome="timeout", latency=2.5)
    record_confidence_decision(decision="rethink", confidence=0.5)
    increment_storage_write_failure(kind="summary")
    increment_feedback_regression()

    transport = httpx.ASGITransport(app=main.app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.get("/metrics")
    finally:
        await transport.aclose()

    assert response.status_code == 200
    assert response.headers.get("content-type", "").startswith("text/plain")

    body = response.text
    assert 'planwright_agent_step_total{agent="critic-agent",outcome="timeout"}' in body
    assert "planwright_agent_step_latency_seconds_bucket" in body
    assert 'planwright_confidence_decisions_total{decision="rethink"}' in body
    assert 'planwright_storage_write_failures_total{kind="summary"}' in body
    assert "planwright_critique_feedback_regressions_total" in body
