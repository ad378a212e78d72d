# casamatch/adapters/clients/llm_scorer.py
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ...config import settings
from ...domain.errors import ScorerError
from ...domain.matching import clamp_score
from .http_resilience import resilient_request


@dataclass(frozen=True)
class ScorerVerdict:
    score: int  # 0..100
    reasoning: str


class MatchScorer(Protocol):
    async def score(
        self,
        buyer_context: dict[str, Any],
        property_context: dict[str, Any],
        history: list[dict[str, Any]],
    ) -> ScorerVerdict:
        """Raise ScorerError (or anything) on failure; the engine falls back to the quick score."""
        raise NotImplementedError


_PROMPT = """You are an experienced Italian real-estate agent. Rate how well this property fits the buyer request.

BUYER REQUEST:
{buyer}

PROPERTY:
{property}

RECENT MATCHES FOR THIS BUYER (property id, score):
{history}

INSTRUCTIONS:
1. Score compatibility on a 0-100 scale.
2. Consider area, price, size, rooms and stated preferences.
3. Penalize price over budget (max -30) and size under the minimum (max -20).
4. Explain the score briefly, in Italian.

Reply ONLY with valid JSON:
{{"score": <0-100>, "reasoning": "<max 200 characters>"}}"""


def _fmt(ctx: dict[str, Any]) -> str:
    lines = []
    for k, v in ctx.items():
        if v is None or v == "" or v == []:
            continue
        lines.append(f"- {k}: {v}")
    return "\n".join(lines) or "- (none)"


def parse_verdict(content: str | None) -> ScorerVerdict:
    if not content:
        raise ScorerError("empty scorer response")
    try:
        data = json.loads(content)
    except ValueError as e:
        raise ScorerError(f"scorer response is not JSON: {content[:120]!r}") from e
    if not isinstance(data, dict) or "score" not in data:
        raise ScorerError("scorer response has no score")
    reasoning = str(data.get("reasoning") or "").strip()[:500]
    return ScorerVerdict(score=clamp_score(data.get("score")), reasoning=reasoning or "no reasoning given")


@dataclass
class LlmMatchScorer:
    """OpenAI-compatible chat completions endpoint, JSON response mode."""

    api_key: str
    base_url: str
    model: str
    timeout_s: float = 30.0

    @classmethod
    def from_settings(cls) -> "LlmMatchScorer":
        if not settings.SCORER_API_KEY:
            raise RuntimeError("SCORER_API_KEY is not set")
        return cls(
            api_key=settings.SCORER_API_KEY,
            base_url=settings.SCORER_BASE_URL.rstrip("/"),
            model=settings.SCORER_MODEL,
        )

    async def score(
        self,
        buyer_context: dict[str, Any],
        property_context: dict[str, Any],
        history: list[dict[str, Any]],
    ) -> ScorerVerdict:
        prompt = _PROMPT.format(
            buyer=_fmt(buyer_context),
            property=_fmt(property_context),
            history="\n".join(f"- {h.get('property_id')}: {h.get('score')}" for h in history) or "- (none)",
        )
        try:
            resp = await resilient_request(
                "POST",
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "response_format": {"type": "json_object"},
                    "temperature": 0.3,
                    "max_tokens": 200,
                },
                timeout_s=self.timeout_s,
            )
        except httpx.HTTPError as e:
            raise ScorerError(f"scorer call failed: {type(e).__name__}: {e}") from e

        body = resp.json()
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ScorerError("unexpected scorer response shape") from e
        return parse_verdict(content)
