"""TaskClassifier: score a query's complexity, domain, quality floor and size.

One cheap model call with a fixed rubric produces the raw classification;
malformed or failed output falls back to a keyword/length heuristic, so
classification never fails a request.

Complexity Signals (blended with the model or heuristic score):
- Length: 20% weight - word count, piecewise up to 1.0 at 100+ words
- Technical density: 30% weight - share of words that are technical terms
- Question complexity: 25% weight - question marks, question/analysis words
- Code presence: 25% weight - fenced blocks, inline code, code keywords

Post-processing, in order:
1. Domain history blend (30%) once a domain has enough samples
2. Golden-example calibration (50/50 on a close Jaccard match)
3. DPO per-domain quality offsets
4. Curriculum ceilings on required quality and estimated tokens
"""

from __future__ import annotations

from collections import OrderedDict, deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
import json
import math
import re
import time
from typing import Any

from arbiter.config.models import BudgetConfig, ClassifierConfig, CurriculumConfig
from arbiter.core.errors import ClassificationFailure
from arbiter.core.text import PatternMatcher, normalize_query
from arbiter.core.types import Result, clamp_unit
from arbiter.observability.logging import get_logger
from arbiter.providers.base import CompletionConfig, LLMAdapter, Message, MessageRole
from arbiter.routing.models import ClassificationSource, Domain, Level, TaskClassification, parse_domain

log = get_logger(__name__)


WEIGHT_LENGTH = 0.20
WEIGHT_TECHNICAL = 0.30
WEIGHT_QUESTION = 0.25
WEIGHT_CODE = 0.25

MAX_HISTORY_SIZE = 1000
TOKENS_PER_WORD = 1.3

TECHNICAL_TERMS = frozenset(
    {
        "algorithm", "api", "array", "async", "await", "backend", "class", "component",
        "database", "debug", "deploy", "error", "function", "implement", "interface",
        "method", "optimize", "query", "refactor", "schema", "server", "syntax",
        "variable", "authentication", "authorization", "cache", "cluster", "compiler",
        "container", "dependency", "docker", "encryption", "frontend", "git",
        "kubernetes", "microservice", "middleware", "npm", "orm", "promise", "react",
        "repository", "rest", "scalable", "typescript", "webpack",
    }
)  # fmt: skip

_QUESTION_WORDS = ("how", "why", "what", "when", "where", "which", "who")
_ANALYSIS_WORDS = ("compare", "analyze", "analyse", "evaluate", "explain", "describe")

_DOMAIN_PATTERNS: tuple[tuple[Domain, re.Pattern[str]], ...] = (
    (Domain.CODE, re.compile(r"\b(code|function|debug|implement|class|variable|syntax|error|bug)")),
    (Domain.REASONING, re.compile(r"\b(analy[sz]e|compare|evaluate|reason|decide|why|how)\b|pros.*cons")),
    (Domain.SUMMARIZATION, re.compile(r"\b(summari[sz]e|tldr|key points|brief|overview)")),
    (Domain.BULK, re.compile(r"\b(batch|bulk|process|transform|convert|multiple)")),
)
_GREETING = re.compile(r"^(hi|hello|hey|thanks|thank you|ok|yes|no)\b")
_FENCED_CODE = re.compile(r"```")
_INLINE_CODE = re.compile(r"`[^`]+`")
_CODE_KEYWORDS = re.compile(r"function\s*\(|const\s+\w+\s*=|class\s+\w+|import\s+\w+|def\s+\w+\s*\(")

_RUBRIC_PROMPT = """You are a task complexity analyzer for an AI routing system.

Complexity rubric:
- 0.0-0.3: trivial (greetings, basic facts, short summaries)
- 0.3-0.6: moderate (code fixes, multi-step reasoning, detailed explanations)
- 0.6-1.0: complex (architecture design, research, expert analysis)

Domains: chat, code, reasoning, summarization, bulk.

Required quality:
- 0.0-0.4: low quality acceptable (casual chat, drafts)
- 0.4-0.7: medium quality (code assistance, explanations)
- 0.7-1.0: high quality (production code, critical decisions)

Respond with only this JSON object:
{"complexity": <0.0-1.0>, "domain": "<domain>", "required_quality": <0.0-1.0>, "estimated_tokens": <integer>}"""


@dataclass(frozen=True, slots=True)
class QueryContext:
    """Per-request context for classification.

    Attributes:
        user_id: Caller.
        subscription_tier: Subscription name; selects the per-request budget.
        curriculum_level: Caps required quality and estimated tokens.
        max_budget: Explicit per-request budget, overriding the subscription's.
    """

    user_id: str
    subscription_tier: str | None = None
    curriculum_level: Level | None = None
    max_budget: float | None = None


@dataclass(frozen=True, slots=True)
class GoldenReference:
    """A golden example reduced to what calibration needs."""

    query: str
    domain: Domain
    complexity: float
    required_quality: float


@dataclass(frozen=True, slots=True)
class ClassifierCalibration:
    """Learned adjustments produced by the learning loop.

    DPO retraining writes ``quality_offsets``; LIMI curation writes
    ``references``. The classifier swaps the whole object atomically.
    """

    quality_offsets: Mapping[Domain, float] = field(default_factory=dict)
    references: tuple[GoldenReference, ...] = ()
    version: int = 0

    def with_quality_offsets(self, offsets: Mapping[Domain, float]) -> ClassifierCalibration:
        return replace(self, quality_offsets=dict(offsets), version=self.version + 1)

    def with_references(self, references: Iterable[GoldenReference]) -> ClassifierCalibration:
        return replace(self, references=tuple(references), version=self.version + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "quality_offsets": {d.value: v for d, v in self.quality_offsets.items()},
            "references": [
                {
                    "query": r.query,
                    "domain": r.domain.value,
                    "complexity": r.complexity,
                    "required_quality": r.required_quality,
                }
                for r in self.references
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ClassifierCalibration:
        return cls(
            version=int(data.get("version", 0)),
            quality_offsets={
                parse_domain(d): float(v) for d, v in data.get("quality_offsets", {}).items()
            },
            references=tuple(
                GoldenReference(
                    query=r["query"],
                    domain=parse_domain(r["domain"]),
                    complexity=float(r["complexity"]),
                    required_quality=float(r["required_quality"]),
                )
                for r in data.get("references", [])
            ),
        )


@dataclass(frozen=True, slots=True)
class ComplexitySignals:
    """Model-independent complexity signals, each in [0, 1]."""

    length: float
    technical_density: float
    question_complexity: float
    code_presence: float

    @property
    def score(self) -> float:
        return clamp_unit(
            self.length * WEIGHT_LENGTH
            + self.technical_density * WEIGHT_TECHNICAL
            + self.question_complexity * WEIGHT_QUESTION
            + self.code_presence * WEIGHT_CODE
        )


def _length_signal(word_count: int) -> float:
    if word_count <= 10:
        return 0.0
    if word_count <= 50:
        return (word_count - 10) / 80
    if word_count <= 100:
        return 0.5 + (word_count - 50) * 0.006
    return min(1.0, 0.8 + (word_count - 100) / 500)


def _technical_density(words: list[str]) -> float:
    if not words:
        return 0.0
    technical = sum(1 for word in words if word.strip(".,;:!?()[]{}\"'`") in TECHNICAL_TERMS)
    density = technical / len(words)
    if density <= 0.1:
        return density * 3
    if density <= 0.3:
        return 0.3 + (density - 0.1) * 2
    return min(1.0, 0.7 + (density - 0.3) * 1.5)


def _question_complexity(text: str, words: list[str]) -> float:
    question_marks = text.count("?")
    bare_words = {word.strip(".,;:!?()\"'") for word in words}
    question_words = sum(1 for word in _QUESTION_WORDS if word in bare_words)
    if question_marks == 0 and question_words == 0:
        return 0.0
    if any(word.startswith(_ANALYSIS_WORDS) for word in bare_words):
        return 0.6
    if question_marks == 1 or question_words == 1:
        return 0.3
    return min(1.0, 0.8 + question_marks * 0.1)


def _code_presence(text: str) -> float:
    if _FENCED_CODE.search(text):
        return 0.7
    inline = bool(_INLINE_CODE.search(text))
    keywords = bool(_CODE_KEYWORDS.search(text))
    if inline and keywords:
        return 0.5
    if inline or keywords:
        return 0.3
    return 0.0


def compute_signals(query: str) -> ComplexitySignals:
    """Compute the four complexity signals for ``query``."""
    lowered = query.lower()
    words = lowered.split()
    return ComplexitySignals(
        length=_length_signal(len(words)),
        technical_density=_technical_density(words),
        question_complexity=_question_complexity(lowered, words),
        code_presence=_code_presence(query),
    )


def detect_domain(query: str) -> Domain:
    """Keyword domain detection; first matching pattern wins, chat otherwise."""
    lowered = query.lower()
    for domain, pattern in _DOMAIN_PATTERNS:
        if pattern.search(lowered):
            return domain
    return Domain.CHAT


def estimate_prompt_tokens(text: str) -> int:
    return math.ceil(len(text.split()) * TOKENS_PER_WORD)


def estimate_tokens(word_count: int, complexity: float) -> int:
    """Prompt tokens plus an output allowance of 2x, 3x or 5x by complexity."""
    input_tokens = math.ceil(word_count * TOKENS_PER_WORD)
    if complexity > 0.6:
        multiplier = 5
    elif complexity > 0.3:
        multiplier = 3
    else:
        multiplier = 2
    return input_tokens + input_tokens * multiplier


def _signal_complexity(signals: ComplexitySignals, domain: Domain) -> float:
    combined = signals.score
    if domain == Domain.CODE:
        combined = min(1.0, combined + 0.15)
    elif domain == Domain.CHAT and signals.question_complexity < 0.3:
        combined = max(0.1, combined - 0.1)
    return clamp_unit(combined)


def heuristic_classification(query: str) -> TaskClassification:
    """Classify from length and keywords alone. Never fails."""
    lowered = query.lower().strip()
    word_count = len(lowered.split())
    domain = detect_domain(lowered)

    if word_count < 10 and _GREETING.match(lowered):
        base = 0.1
    elif word_count < 20:
        base = 0.3
    elif word_count < 50:
        base = 0.5
    else:
        base = 0.7

    if domain in (Domain.CODE, Domain.REASONING):
        base = min(1.0, base + 0.2)
    elif domain in (Domain.SUMMARIZATION, Domain.BULK):
        base = max(0.2, base - 0.1)

    complexity = base * 0.5 + _signal_complexity(compute_signals(query), domain) * 0.5

    if domain == Domain.CODE:
        required_quality = 0.7
    elif domain == Domain.REASONING:
        required_quality = 0.8
    elif domain == Domain.CHAT and complexity < 0.3:
        required_quality = 0.3
    else:
        required_quality = 0.5

    return TaskClassification(
        complexity=complexity,
        domain=domain,
        required_quality=required_quality,
        estimated_tokens=estimate_tokens(word_count, complexity),
        source=ClassificationSource.HEURISTIC,
    )


def parse_model_output(content: str) -> Result[dict[str, Any], ClassificationFailure]:
    """Extract and validate the rubric JSON from a model reply."""
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end <= start:
        return Result.err(ClassificationFailure("No JSON object in classifier output", raw_output=content))

    try:
        data = json.loads(content[start : end + 1])
        parsed = {
            "complexity": clamp_unit(float(data["complexity"])),
            "domain": parse_domain(data["domain"]),
            "required_quality": clamp_unit(float(data.get("required_quality", data.get("requiredQuality")))),
        }
        tokens = data.get("estimated_tokens", data.get("estimatedTokens"))
        if tokens is not None:
            parsed["estimated_tokens"] = max(0, int(float(tokens)))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        return Result.err(
            ClassificationFailure(
                f"Malformed classifier output: {e}",
                raw_output=content,
                details={"error_type": type(e).__name__},
            )
        )
    return Result.ok(parsed)


class TaskClassifier:
    """Classifies queries for ModelSelector.

    The classifier keeps a TTL cache and a bounded per-domain history of
    complexities; both are local to the process and only read from the
    hot path. Learned calibration is swapped in by the learning loop.

    Example:
        classifier = TaskClassifier(LiteLLMAdapter(), config.classifier, config.budgets, config.curriculum)
        classification = await classifier.classify("Fix this bug", QueryContext(user_id="u1"))
    """

    def __init__(
        self,
        adapter: LLMAdapter | None,
        config: ClassifierConfig,
        budgets: BudgetConfig,
        curriculum: CurriculumConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapter = adapter
        self._config = config
        self._budgets = budgets
        self._curriculum = curriculum
        self._clock = clock
        self._matcher = PatternMatcher(config.golden_similarity_threshold)
        self._calibration = ClassifierCalibration()
        self._cache: OrderedDict[tuple[str, str, str], tuple[float, TaskClassification]] = OrderedDict()
        self._history: dict[Domain, deque[float]] = {}

    @property
    def calibration(self) -> ClassifierCalibration:
        return self._calibration

    def set_calibration(self, calibration: ClassifierCalibration) -> None:
        """Swap in new learned calibration and drop cached classifications."""
        self._calibration = calibration
        self._cache.clear()
        log.info(
            "classifier.calibration.updated",
            version=calibration.version,
            offsets={d.value: round(v, 4) for d, v in calibration.quality_offsets.items()},
            references=len(calibration.references),
        )

    def history_size(self, domain: Domain) -> int:
        return len(self._history.get(domain, ()))

    async def classify(self, query: str, context: QueryContext) -> TaskClassification:
        """Classify ``query`` for ``context``. Never raises for bad model output."""
        subscription = self._subscription_name(context.subscription_tier)
        level = context.curriculum_level.value if context.curriculum_level else ""
        key = (normalize_query(query), subscription, level)

        cached = self._cache_get(key)
        if cached is not None and context.max_budget is None:
            log.debug("classifier.cache.hit", domain=cached.domain.value)
            return cached.model_copy(update={"source": ClassificationSource.CACHE})

        base = await self._base_classification(query)
        complexity = self._blend_history(base.complexity, base.domain)
        self._record_history(base.domain, base.complexity)

        required_quality = base.required_quality
        reference = self._match_reference(query)
        if reference is not None:
            complexity = 0.5 * complexity + 0.5 * reference.complexity
            required_quality = 0.5 * required_quality + 0.5 * reference.required_quality

        required_quality += self._calibration.quality_offsets.get(base.domain, 0.0)
        estimated_tokens = base.estimated_tokens

        if context.curriculum_level is not None:
            ceiling = self._curriculum.ceilings.get(context.curriculum_level.value)
            if ceiling is not None:
                required_quality = min(required_quality, ceiling.max_required_quality)
                estimated_tokens = min(estimated_tokens, ceiling.max_estimated_tokens)

        budget = (
            context.max_budget
            if context.max_budget is not None
            else self._budgets.subscriptions[subscription].per_request_limit
        )

        classification = TaskClassification(
            complexity=complexity,
            domain=base.domain,
            required_quality=required_quality,
            estimated_tokens=estimated_tokens,
            budget_constraint=budget,
            source=base.source,
        )
        if context.max_budget is None:
            self._cache_put(key, classification)

        log.info(
            "classifier.query.classified",
            domain=classification.domain.value,
            complexity=round(classification.complexity, 3),
            required_quality=round(classification.required_quality, 3),
            estimated_tokens=classification.estimated_tokens,
            source=classification.source.value,
        )
        return classification

    async def _base_classification(self, query: str) -> TaskClassification:
        if self._adapter is None:
            return heuristic_classification(query)

        result = await self._classify_with_model(self._adapter, query)
        if result.is_err:
            log.warning(
                "classifier.model.fallback_used",
                error=result.error.message,
                error_type=type(result.error).__name__,
            )
            return heuristic_classification(query)

        data = result.value
        domain: Domain = data["domain"]
        signal = _signal_complexity(compute_signals(query), domain)
        weight = self._config.model_weight
        complexity = data["complexity"] * weight + signal * (1 - weight)
        tokens = data.get("estimated_tokens")
        if not tokens:
            tokens = estimate_tokens(len(query.split()), complexity)

        return TaskClassification(
            complexity=complexity,
            domain=domain,
            required_quality=data["required_quality"],
            estimated_tokens=tokens,
            source=ClassificationSource.MODEL,
        )

    async def _classify_with_model(
        self, adapter: LLMAdapter, query: str
    ) -> Result[dict[str, Any], ClassificationFailure]:
        result = await adapter.complete(
            [
                Message(role=MessageRole.SYSTEM, content=_RUBRIC_PROMPT),
                Message(role=MessageRole.USER, content=query),
            ],
            CompletionConfig(
                model=self._config.model,
                temperature=self._config.temperature,
                max_tokens=self._config.max_tokens,
            ),
        )
        if result.is_err:
            return Result.err(
                ClassificationFailure(
                    f"Classifier model call failed: {result.error.message}",
                    details={"provider": result.error.provider},
                )
            )
        return parse_model_output(result.value.content)

    def _subscription_name(self, tier: str | None) -> str:
        if tier and tier in self._budgets.subscriptions:
            return tier
        if tier:
            log.warning("classifier.subscription.unknown", subscription_tier=tier)
        return self._budgets.default_subscription

    def _blend_history(self, complexity: float, domain: Domain) -> float:
        samples = self._history.get(domain)
        if not samples or len(samples) < self._config.history_min_samples:
            return complexity
        average = sum(samples) / len(samples)
        blend = self._config.history_blend
        return complexity * (1 - blend) + average * blend

    def _record_history(self, domain: Domain, complexity: float) -> None:
        self._history.setdefault(domain, deque(maxlen=MAX_HISTORY_SIZE)).append(complexity)

    def _match_reference(self, query: str) -> GoldenReference | None:
        references = self._calibration.references
        if not references:
            return None
        match = self._matcher.best_match(query, (r.query for r in references))
        if match is None:
            return None
        index, similarity = match
        log.debug("classifier.reference.matched", similarity=round(similarity, 3))
        return references[index]

    def _cache_get(self, key: tuple[str, str, str]) -> TaskClassification | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, classification = entry
        if self._clock() - stored_at > self._config.cache_ttl_seconds:
            del self._cache[key]
            return None
        self._cache.move_to_end(key)
        return classification

    def _cache_put(self, key: tuple[str, str, str], classification: TaskClassification) -> None:
        if self._config.cache_size == 0:
            return
        self._cache[key] = (self._clock(), classification)
        self._cache.move_to_end(key)
        while len(self._cache) > self._config.cache_size:
            self._cache.popitem(last=False)
