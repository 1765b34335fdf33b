"""Quality judgment for cascade tiers.

A judge scores one tier's output in [0, 1]; ``QualityGate`` compares the
score with an explicit acceptance threshold. Both are testable without
running a cascade.

HeuristicJudge scoring (sums to at most 1.0):
- completeness: 0.3 unless the completion hit the cap (finish reason
  "length", or completion tokens at 90% of max_tokens or more); a capped
  output scores 0.2 if it still ends on terminal punctuation, else 0.1
- length: 0.2 for 50-5000 characters, 0.1 for 20-10000, else 0
- refusal/error phrasing: 0.3 if absent, 0.1 if present
- declared model quality x 0.2
"""

from dataclasses import dataclass
import json
import re
from typing import Protocol

from arbiter.core.types import Score, clamp_unit
from arbiter.observability.logging import get_logger
from arbiter.providers.base import CompletionConfig, LLMAdapter, Message, MessageRole
from arbiter.routing.models import ModelCandidate

log = get_logger(__name__)

_ERROR_PATTERN = re.compile(r"\b(error|failed|unable|cannot|sorry|apologi[sz]e)\b", re.IGNORECASE)
_TERMINAL_PUNCTUATION = (".", "!", "?", "```", ")", '"')


@dataclass(frozen=True, slots=True)
class JudgeInput:
    """Everything a judge may look at for one tier's output."""

    query: str
    text: str
    candidate: ModelCandidate
    tokens_used: int
    max_tokens: int
    completion_tokens: int = 0
    finish_reason: str = "stop"

    @property
    def hit_token_cap(self) -> bool:
        if self.finish_reason == "length":
            return True
        return self.max_tokens > 0 and self.completion_tokens >= 0.9 * self.max_tokens


class QualityJudge(Protocol):
    async def score(self, judge_input: JudgeInput) -> Score: ...


class HeuristicJudge:
    """Scores output from its shape alone. No model call."""

    async def score(self, judge_input: JudgeInput) -> Score:
        return self.score_sync(judge_input)

    def score_sync(self, judge_input: JudgeInput) -> Score:
        text = judge_input.text.strip()
        if not text:
            return 0.0

        if not judge_input.hit_token_cap:
            completeness = 0.3
        elif text.endswith(_TERMINAL_PUNCTUATION):
            completeness = 0.2
        else:
            completeness = 0.1

        length = len(text)
        if 50 <= length <= 5000:
            length_score = 0.2
        elif 20 <= length <= 10000:
            length_score = 0.1
        else:
            length_score = 0.0

        error_score = 0.1 if _ERROR_PATTERN.search(text) else 0.3
        model_score = judge_input.candidate.quality_score * 0.2

        return clamp_unit(completeness + length_score + error_score + model_score)


_JUDGE_PROMPT = """Rate how well the RESPONSE answers the QUERY.
Return only JSON: {{"score": <number between 0 and 1>}}

QUERY:
{query}

RESPONSE:
{response}"""


class ModelJudge:
    """Asks a secondary model for a score; falls back to heuristics on any failure."""

    def __init__(
        self,
        adapter: LLMAdapter,
        model: str,
        *,
        fallback: HeuristicJudge | None = None,
        max_chars: int = 6000,
    ) -> None:
        self._adapter = adapter
        self._model = model
        self._fallback = fallback or HeuristicJudge()
        self._max_chars = max_chars

    async def score(self, judge_input: JudgeInput) -> Score:
        prompt = _JUDGE_PROMPT.format(
            query=judge_input.query[: self._max_chars],
            response=judge_input.text[: self._max_chars],
        )
        result = await self._adapter.complete(
            [Message(role=MessageRole.USER, content=prompt)],
            CompletionConfig(model=self._model, temperature=0.0, max_tokens=50),
        )
        if result.is_err:
            log.warning("judge.model.failed", model=self._model, error=str(result.error))
            return await self._fallback.score(judge_input)

        parsed = _parse_score(result.value.content)
        if parsed is None:
            log.warning("judge.model.malformed", model=self._model)
            return await self._fallback.score(judge_input)
        return parsed


def _parse_score(content: str) -> Score | None:
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(content[start : end + 1])
        return clamp_unit(float(data["score"]))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        return None


@dataclass(frozen=True, slots=True)
class QualityGate:
    """ACCEPTED vs ESCALATE: accept when score >= threshold."""

    threshold: Score

    def accepts(self, score: Score) -> bool:
        return score >= self.threshold
