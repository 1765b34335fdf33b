"""ModelSelector: turn a classification into a cost-ordered cascade chain.

Selection Rules:
- Effective floor = max(required_quality + quality_floor_offset,
  domain_min_quality[domain]), clipped to [0, 1]
- Keep candidates whose quality_score >= floor
- Skip tier-1 candidates when complexity > tier1_max_complexity
- Sort by cost ascending (ties: higher quality first, then provider id)
- Keep the cheapest passing candidate of each tier, then truncate to
  max_chain_length (cheap -> mid -> premium)
- Nothing passes: a single-element chain with the highest-quality
  candidate regardless of cost
"""

from arbiter.core.types import clamp_unit
from arbiter.observability.logging import get_logger
from arbiter.routing.models import CascadeChain, ModelCandidate, TaskClassification
from arbiter.routing.registry import RoutingConfig

log = get_logger(__name__)


def effective_quality_floor(classification: TaskClassification, config: RoutingConfig) -> float:
    """The quality floor after the live strategy parameters are applied."""
    params = config.parameters
    floor = classification.required_quality + params.quality_floor_offset
    domain_floor = params.domain_min_quality.get(classification.domain)
    if domain_floor is not None:
        floor = max(floor, domain_floor)
    return clamp_unit(floor)


def _cost_order(candidate: ModelCandidate) -> tuple[float, float, str]:
    return (candidate.cost_per_1k_tokens, -candidate.quality_score, candidate.provider_id)


class ModelSelector:
    """Builds CascadeChains from a RoutingConfig snapshot.

    The selector holds no state; the snapshot is passed per call so that
    one request sees one consistent registry.

    Example:
        selector = ModelSelector()
        chain = selector.build_chain(classification, holder.snapshot())
    """

    def build_chain(
        self, classification: TaskClassification, config: RoutingConfig
    ) -> CascadeChain:
        params = config.parameters
        floor = effective_quality_floor(classification, config)

        passing = [c for c in config.candidates if c.quality_score >= floor]
        if classification.complexity > params.tier1_max_complexity:
            passing = [c for c in passing if c.tier > 1]

        chain: list[ModelCandidate] = []
        seen_tiers: set[int] = set()
        for candidate in sorted(passing, key=_cost_order):
            if candidate.tier in seen_tiers:
                continue
            seen_tiers.add(candidate.tier)
            chain.append(candidate)
            if len(chain) >= params.max_chain_length:
                break

        if not chain:
            best = max(
                config.candidates,
                key=lambda c: (c.quality_score, -c.cost_per_1k_tokens),
            )
            log.info(
                "selector.chain.fallback_used",
                required_quality=classification.required_quality,
                quality_floor=floor,
                provider_id=best.provider_id,
            )
            return CascadeChain(candidates=(best,), fallback=True)

        log.debug(
            "selector.chain.built",
            domain=classification.domain.value,
            quality_floor=floor,
            chain=[c.provider_id for c in chain],
            config_version=config.version,
        )
        return CascadeChain(candidates=tuple(chain))
