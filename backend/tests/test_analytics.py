"""Tests for cost analytics aggregation."""

from datetime import datetime, timezone

import pytest

from flowstream.database import ExecutionLog
from flowstream.services.analytics import (
    aggregate_model_usage,
    month_start,
    monthly_budget,
    optimization_suggestions,
    period_range,
)
from flowstream.utils.db_helpers import dumps_json

NOW = datetime(2026, 3, 31, 12, 30, tzinfo=timezone.utc)


def log(workflow_id="wf-1", total_cost=0.0, total_tokens=0, **model_usage):
    metrics = {"totalTokens": total_tokens, "totalCost": total_cost, "modelUsage": model_usage}
    return ExecutionLog(workflow_id=workflow_id, total_cost=total_cost, metrics=dumps_json(metrics))


def test_period_range_clamps_month_end():
    start, end = period_range("month", NOW)
    assert start == datetime(2026, 2, 28, 12, 30, tzinfo=timezone.utc)
    assert end == NOW


def test_month_start():
    assert month_start(NOW) == datetime(2026, 3, 1, tzinfo=timezone.utc)


def test_monthly_budget_within_limit():
    usage = monthly_budget(10.0, 50.0, NOW)
    assert usage == {
        "currentMonth": "2026-03",
        "currentUsage": 10.0,
        "monthlyLimit": 50.0,
        "percentUsed": 20.0,
        "remaining": 40.0,
        "isOverLimit": False,
        "isNearLimit": False,
    }


def test_monthly_budget_over_limit_is_capped():
    usage = monthly_budget(60.0, 50.0, NOW)
    assert usage["percentUsed"] == 100
    assert usage["remaining"] == 0
    assert usage["isOverLimit"]
    assert usage["isNearLimit"]


def test_aggregate_model_usage_across_executions():
    logs = [
        log("wf-1", **{"gpt-4": {"provider": "openai", "tokens": 1000, "cost": 0.5}}),
        log("wf-2", **{"gpt-4": {"provider": "openai", "tokens": 3000, "cost": 1.5}}),
        log("wf-2", **{"claude-3-haiku": {"provider": "anthropic", "tokens": 200, "cost": 0.01}}),
    ]

    usage = aggregate_model_usage(logs)

    assert usage["gpt-4"]["totalCost"] == pytest.approx(2.0)
    assert usage["gpt-4"]["executions"] == 2
    assert usage["gpt-4"]["workflows"] == {"wf-1", "wf-2"}
    assert usage["gpt-4"]["avgTokens"] == pytest.approx(2000)
    assert usage["claude-3-haiku"]["provider"] == "anthropic"


def test_switch_model_suggested_for_expensive_model():
    logs = [log(**{"gpt-4": {"provider": "openai", "tokens": 1000, "cost": 2.0}})]

    result = optimization_suggestions(logs, NOW)

    [suggestion] = result["suggestions"]
    assert suggestion["type"] == "SWITCH_MODEL"
    assert suggestion["priority"] == "low"
    assert suggestion["current"]["costPer1kTokens"] == 0.03
    assert suggestion["suggested"]["model"] == "llama-3.1-70b-versatile"
    assert suggestion["monthlySavings"] == pytest.approx(1.8)
    assert result["potentialSavings"] == pytest.approx(1.8)
    assert result["analyzed"] == {"executions": 1, "period": "Last 30 days", "modelsTracked": 1}


def test_cheap_or_unknown_models_get_no_switch():
    logs = [
        log(**{"gpt-4": {"provider": "openai", "cost": 0.5}}),
        log(**{"some-local-model": {"provider": "ollama", "cost": 20.0}}),
    ]
    assert optimization_suggestions(logs, NOW)["suggestions"] == []


def test_many_small_cloud_runs_suggest_local_models():
    logs = [log(total_cost=0.6, total_tokens=200) for _ in range(11)]

    result = optimization_suggestions(logs, NOW)

    [suggestion] = result["suggestions"]
    assert suggestion["type"] == "USE_OLLAMA"
    assert suggestion["priority"] == "high"
    assert suggestion["monthlySavings"] == pytest.approx(6.6)


def test_suggestions_sorted_by_savings():
    logs = [
        log(**{"gpt-4": {"provider": "openai", "cost": 12.0}}),
        log(**{"claude-3-sonnet": {"provider": "anthropic", "cost": 6.0}}),
        log(**{"gpt-3.5-turbo": {"provider": "openai", "cost": 2.0}}),
    ]

    suggestions = optimization_suggestions(logs, NOW)["suggestions"]

    assert [s["current"]["model"] for s in suggestions] == ["gpt-4", "claude-3-sonnet", "gpt-3.5-turbo"]
    assert [s["priority"] for s in suggestions] == ["high", "medium", "low"]
