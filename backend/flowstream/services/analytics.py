"""
Cost analytics over persisted executions.
"""

import calendar
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Tuple

from flowstream.database import ExecutionLog
from flowstream.utils.db_helpers import safe_parse_metrics
from flowstream.utils.time import to_iso

PERIODS = ("week", "month", "year")
TOP_WORKFLOWS = 10


def _shift_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_range(period: str, now: datetime) -> Tuple[datetime, datetime]:
    """Date range ending at ``now`` for a named period (unknown periods mean month)."""
    if period == "week":
        return now - timedelta(days=7), now
    if period == "year":
        return _shift_months(now, -12), now
    return _shift_months(now, -1), now


def summarize_costs(
    logs: Iterable[ExecutionLog],
    budget_limit: float,
) -> Dict[str, Any]:
    """
    Aggregate execution costs.

    Returns total, per-provider breakdown, daily trend, top workflows and
    budget usage. Executions without provider metrics are counted under
    ``unknown`` only when no execution in the range has any.
    """
    logs = list(logs)
    total_cost = sum(log.total_cost or 0 for log in logs)

    provider_costs: Dict[str, Dict[str, float]] = defaultdict(lambda: {"cost": 0.0, "executions": 0})
    for log in logs:
        by_provider = safe_parse_metrics(log.metrics).get("costByProvider") or {}
        for provider, cost in by_provider.items():
            provider_costs[provider]["cost"] += cost
            provider_costs[provider]["executions"] += 1

    if not provider_costs and total_cost > 0:
        provider_costs["unknown"] = {"cost": total_cost, "executions": len(logs)}

    breakdown = sorted(
        (
            {
                "provider": provider,
                "cost": round(data["cost"], 3),
                "percentage": round(data["cost"] / total_cost * 100) if total_cost > 0 else 0,
                "executions": data["executions"],
            }
            for provider, data in provider_costs.items()
        ),
        key=lambda item: item["cost"],
        reverse=True,
    )

    daily: Dict[str, Dict[str, float]] = defaultdict(lambda: {"cost": 0.0, "executions": 0})
    for log in logs:
        date_key = to_iso(log.start_time)[:10]
        daily[date_key]["cost"] += log.total_cost or 0
        daily[date_key]["executions"] += 1

    trend = [
        {"date": date, "cost": round(data["cost"], 3), "executions": data["executions"]}
        for date, data in sorted(daily.items())
    ]

    workflows: Dict[str, Dict[str, Any]] = {}
    for log in logs:
        entry = workflows.setdefault(
            log.workflow_id,
            {"name": log.workflow.name if log.workflow else "", "cost": 0.0, "executions": 0},
        )
        entry["cost"] += log.total_cost or 0
        entry["executions"] += 1

    top_workflows = sorted(
        (
            {
                "workflowId": workflow_id,
                "workflowName": data["name"],
                "totalCost": round(data["cost"], 3),
                "executions": data["executions"],
                "avgCostPerRun": round(data["cost"] / data["executions"], 4),
            }
            for workflow_id, data in workflows.items()
        ),
        key=lambda item: item["totalCost"],
        reverse=True,
    )[:TOP_WORKFLOWS]

    return {
        "total": round(total_cost, 3),
        "breakdown": breakdown,
        "trend": trend,
        "topWorkflows": top_workflows,
        "executions": len(logs),
        "budget": budget_usage(total_cost, budget_limit),
    }


def budget_usage(used: float, limit: float) -> Dict[str, float]:
    return {
        "limit": limit,
        "used": used,
        "remaining": limit - used,
        "percentage": used / limit * 100 if limit else 0.0,
    }


def parse_date_range(
    start: Optional[datetime], end: Optional[datetime], period: str, now: datetime
) -> Tuple[datetime, datetime]:
    """Explicit range when both bounds are given, otherwise the named period."""
    if start is not None and end is not None:
        return start, end
    return period_range(period, now)


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def monthly_budget(used: float, limit: float, now: datetime) -> Dict[str, Any]:
    """Current month's spend against the monthly limit."""
    percent_used = used / limit * 100 if limit else 100.0
    return {
        "currentMonth": now.strftime("%Y-%m"),
        "currentUsage": round(used, 4),
        "monthlyLimit": limit,
        "percentUsed": min(percent_used, 100),
        "remaining": max(limit - used, 0),
        "isOverLimit": used >= limit,
        "isNearLimit": percent_used >= 80,
    }


# ============================================================================
# Optimization Suggestions
# ============================================================================

# Approximate cost per 1K tokens
MODEL_COSTS = {
    "gpt-4": 0.03,
    "gpt-4-turbo": 0.01,
    "gpt-3.5-turbo": 0.0015,
    "claude-3-opus": 0.015,
    "claude-3-sonnet": 0.003,
    "claude-3-haiku": 0.00025,
    "gemini-1.5-pro": 0.00125,
    "gemini-1.5-flash": 0.000075,
    "llama-3.1-70b-versatile": 0,  # Groq free tier
    "llama3:8b": 0,  # Ollama local
    "mistral:7b": 0,  # Ollama local
}

# Free (or near free) substitutes for expensive models
FREE_ALTERNATIVES = {
    "gpt-4": {"provider": "groq", "model": "llama-3.1-70b-versatile", "quality": "85%"},
    "gpt-4-turbo": {"provider": "groq", "model": "llama-3.1-70b-versatile", "quality": "85%"},
    "gpt-3.5-turbo": {"provider": "ollama", "model": "llama3:8b", "quality": "90%"},
    "claude-3-opus": {"provider": "groq", "model": "llama-3.1-70b-versatile", "quality": "80%"},
    "claude-3-sonnet": {"provider": "gemini", "model": "gemini-1.5-flash", "quality": "90%"},
    "gemini-1.5-pro": {"provider": "gemini", "model": "gemini-1.5-flash", "quality": "95%"},
}

SWITCH_MIN_MONTHLY_COST = 1.0
SWITCH_SAVINGS_RATIO = 0.9
SIMPLE_TASK_MAX_TOKENS = 500
SIMPLE_TASK_MIN_COST = 0.01
SIMPLE_TASK_MIN_COUNT = 10
MAX_SUGGESTIONS = 10


def _priority(cost: float, high: float, medium: float) -> str:
    if cost > high:
        return "high"
    if cost > medium:
        return "medium"
    return "low"


def aggregate_model_usage(logs: Iterable[ExecutionLog]) -> Dict[str, Dict[str, Any]]:
    """Per-model spend over executions, from each execution's ``modelUsage`` metrics."""
    usage: Dict[str, Dict[str, Any]] = {}
    for log in logs:
        model_usage = safe_parse_metrics(log.metrics).get("modelUsage") or {}
        for model, data in model_usage.items():
            if not isinstance(data, dict):
                continue
            entry = usage.setdefault(
                model,
                {
                    "provider": data.get("provider") or "unknown",
                    "totalCost": 0.0,
                    "executions": 0,
                    "workflows": set(),
                    "avgTokens": 0.0,
                },
            )
            entry["totalCost"] += data.get("cost") or 0
            entry["executions"] += 1
            entry["workflows"].add(log.workflow_id)
            n = entry["executions"]
            entry["avgTokens"] = (entry["avgTokens"] * (n - 1) + (data.get("tokens") or 0)) / n
    return usage


def optimization_suggestions(logs: Iterable[ExecutionLog], now: datetime) -> Dict[str, Any]:
    """
    Cost saving suggestions from the last month of executions.

    SWITCH_MODEL: a model with a known cheaper substitute that cost more than
    $1 in the period (savings estimated at 90%).
    USE_OLLAMA: more than 10 small executions (under 500 tokens, over $0.01)
    that could run locally.
    """
    logs = list(logs)
    stamp = int(now.timestamp() * 1000)
    usage = aggregate_model_usage(logs)
    suggestions = []

    for model, entry in usage.items():
        alternative = FREE_ALTERNATIVES.get(model)
        if not alternative or entry["totalCost"] <= SWITCH_MIN_MONTHLY_COST:
            continue
        savings = entry["totalCost"] * SWITCH_SAVINGS_RATIO
        suggestions.append(
            {
                "id": f"switch-{model}-{stamp}",
                "type": "SWITCH_MODEL",
                "priority": _priority(entry["totalCost"], 10, 5),
                "current": {
                    "provider": entry["provider"],
                    "model": model,
                    "cost": round(entry["totalCost"], 2),
                    "costPer1kTokens": MODEL_COSTS.get(model),
                    "description": f"{entry['executions']} executions this month",
                },
                "suggested": {
                    "provider": alternative["provider"],
                    "model": alternative["model"],
                    "cost": 0,
                    "costPer1kTokens": MODEL_COSTS.get(alternative["model"]),
                    "description": f"{alternative['quality']} quality compared to {model}",
                },
                "workflows": len(entry["workflows"]),
                "monthlySavings": round(savings, 2),
                "impact": f"Save ~${round(savings, 2)}/month",
                "howToApply": (
                    f"Open workflow settings and change the model from {model} "
                    f"to {alternative['model']} ({alternative['provider']})"
                ),
            }
        )

    simple_tasks = []
    for log in logs:
        metrics = safe_parse_metrics(log.metrics)
        tokens = metrics.get("totalTokens") or 0
        if 0 < tokens < SIMPLE_TASK_MAX_TOKENS and (metrics.get("totalCost") or 0) > SIMPLE_TASK_MIN_COST:
            simple_tasks.append(log)

    if len(simple_tasks) > SIMPLE_TASK_MIN_COUNT:
        savings = sum(log.total_cost or 0 for log in simple_tasks)
        suggestions.append(
            {
                "id": f"use-ollama-{stamp}",
                "type": "USE_OLLAMA",
                "priority": "high" if savings > 5 else "medium",
                "current": {
                    "provider": "cloud",
                    "cost": round(savings, 2),
                    "description": f"{len(simple_tasks)} simple tasks using cloud AI",
                },
                "suggested": {
                    "provider": "ollama",
                    "model": "llama3:8b",
                    "cost": 0,
                    "description": "Run locally for free with similar quality",
                },
                "monthlySavings": round(savings, 2),
                "impact": "Reduce cloud costs to $0 for simple tasks",
                "howToApply": "1. Install Ollama\n2. Download llama3:8b\n3. Update workflow agents to use Ollama",
            }
        )

    suggestions.sort(key=lambda s: s["monthlySavings"], reverse=True)
    potential = sum(s["monthlySavings"] for s in suggestions)
    return {
        "potentialSavings": round(potential, 2),
        "suggestions": suggestions[:MAX_SUGGESTIONS],
        "analyzed": {
            "executions": len(logs),
            "period": "Last 30 days",
            "modelsTracked": len(usage),
        },
    }
