"""Keyword heuristics that turn chat messages into client insights."""

from typing import Any

from pydantic import BaseModel, Field


BUDGET_KEYWORDS = ["budget", "price", "cost", "expensive", "cheap", "afford", "money"]
NEGATIVE_BUDGET_PHRASES = ["expensive", "too much"]

INTENT_KEYWORDS = ["interested", "buy", "purchase", "viewing", "visit", "see", "love", "perfect"]
HIGH_INTENT_KEYWORDS = ["love", "perfect", "buy", "purchase"]

AREA_KEYWORDS = ["location", "area", "neighborhood", "district", "near", "close to"]

URGENCY_KEYWORDS = ["urgent", "asap", "soon", "quickly", "immediately", "this week", "today"]


class Insight(BaseModel):
    """A single classified signal about a client."""

    insight_type: str
    insight_data: dict[str, Any] = Field(default_factory=dict)
    confidence_score: float


def _matching(keywords: list[str], text: str) -> list[str]:
    return [keyword for keyword in keywords if keyword in text]


def classify(text: str) -> list[Insight]:
    """
    Classify a message by keyword membership.

    Matching is a case-insensitive substring test, so "seen" counts as "see".
    Insights are returned in a fixed order: budget, intent, area, urgency.
    """
    content = (text or "").lower()
    insights: list[Insight] = []

    budget = _matching(BUDGET_KEYWORDS, content)
    if budget:
        negative = any(phrase in content for phrase in NEGATIVE_BUDGET_PHRASES)
        insights.append(
            Insight(
                insight_type="budget_update",
                insight_data={
                    "keywords": budget,
                    "message": "Budget discussion detected",
                    "sentiment": "negative" if negative else "neutral",
                },
                confidence_score=0.8,
            )
        )

    intent = _matching(INTENT_KEYWORDS, content)
    if intent:
        level = "high" if _matching(HIGH_INTENT_KEYWORDS, content) else "medium"
        insights.append(
            Insight(
                insight_type="intent_level",
                insight_data={
                    "level": level,
                    "keywords": intent,
                    "message": f"{level} intent detected",
                },
                confidence_score=0.9 if level == "high" else 0.7,
            )
        )

    area = _matching(AREA_KEYWORDS, content)
    if area:
        insights.append(
            Insight(
                insight_type="area_preference",
                insight_data={
                    "keywords": area,
                    "message": "Location preference mentioned",
                },
                confidence_score=0.7,
            )
        )

    urgency = _matching(URGENCY_KEYWORDS, content)
    if urgency:
        insights.append(
            Insight(
                insight_type="urgency",
                insight_data={
                    "level": "high",
                    "keywords": urgency,
                    "message": "High urgency detected",
                },
                confidence_score=0.85,
            )
        )

    return insights
