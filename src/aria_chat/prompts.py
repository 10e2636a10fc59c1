from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

GREETING = (
    "Hi! I'm ARIA, your AI coaching assistant. I can help you analyze your "
    "training data, suggest recovery strategies, and optimize your performance. "
    "What would you like to know?"
)

FALLBACK_REPLY = "I'm sorry, I encountered an error. Please try again."

DEFAULT_SUGGESTED_PROMPTS = (
    "How should I adjust my training based on my current readiness?",
    "What does my sleep data suggest about my recovery?",
    "How can I improve my training load balance?",
    "What recovery strategies do you recommend?",
)


def _insight_prompt(insight: Mapping[str, Any]) -> str | None:
    kind = insight.get("type")
    value = insight.get("value")
    if value is None:
        return None
    if kind == "readiness":
        return f"My readiness is {value}%. What should I focus on today?"
    if kind == "sleep":
        return f"My sleep score is {value}%. How can I improve my recovery?"
    if kind == "load":
        # load is a ratio, shown with two decimals
        try:
            ratio = f"{float(value):.2f}"
        except (TypeError, ValueError):
            return None
        return f"My training load ratio is {ratio}. Is this optimal?"
    if kind == "stress":
        return f"My stress level is {value}%. How should this affect my training?"
    return None


def suggested_prompts(
    insights: Iterable[Mapping[str, Any]] = (),
    *,
    limit: int = 4,
) -> list[str]:
    """Contextual prompts built from insights, topped up with the defaults."""
    prompts = [p for p in (_insight_prompt(i) for i in insights) if p]
    prompts.extend(DEFAULT_SUGGESTED_PROMPTS)
    return prompts[: max(0, limit)]
