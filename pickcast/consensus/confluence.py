"""
Factor Confluence — which factors do the agreeing sources share?

Three sources agreeing on OVER because they all lean on the same pace factor
is a stronger signal than three sources each citing something different.

For every factor key cited by the agreeing group:
    mention_ratio = citing sources / agreeing sources
    alignment     = mention_ratio × (1.0 if all contributions share a sign else 0.5)
"""

from dataclasses import dataclass
from typing import Iterable, Sequence

from pickcast.consensus.schemas import FactorCitation, PickSourceRecord

# ── Configuration ─────────────────────────────────────────────────────────

TOP_FACTOR_LIMIT: int = 3
MIXED_SIGN_PENALTY: float = 0.5


@dataclass(frozen=True)
class FactorConfluence:
    key: str
    name: str
    sources: list[str]
    mentions: int
    same_sign: bool
    avg_contribution: float
    alignment: float

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "sources": self.sources,
            "mentions": self.mentions,
            "same_sign": self.same_sign,
            "avg_contribution": self.avg_contribution,
            "alignment": self.alignment,
        }


def top_factors(breakdown: Iterable[dict], limit: int = TOP_FACTOR_LIMIT) -> list[FactorCitation]:
    """
    Strongest factors of one decision's breakdown, by |contribution|.

    Entries without a key or a numeric contribution are skipped.
    """
    usable = [
        item for item in breakdown
        if item.get("key") and isinstance(item.get("contribution"), (int, float))
    ]
    usable.sort(key=lambda item: abs(item["contribution"]), reverse=True)
    return [
        FactorCitation(
            key=item["key"],
            name=item.get("name") or item["key"],
            contribution=float(item["contribution"]),
        )
        for item in usable[:limit]
    ]


def analyze_confluence(agreeing: Sequence[PickSourceRecord]) -> list[FactorConfluence]:
    """Rank factor keys by alignment (desc), then by mentions (desc)."""
    if not agreeing:
        return []

    # key → (name, sources, contributions); dict keeps first-seen order for ties
    mentions: dict[str, tuple[str, list[str], list[float]]] = {}
    for record in agreeing:
        for factor in record.top_factors:
            name, sources, contributions = mentions.setdefault(
                factor.key, (factor.name or factor.key, [], []),
            )
            sources.append(record.source)
            contributions.append(factor.contribution)

    total = len(agreeing)
    confluence: list[FactorConfluence] = []
    for key, (name, sources, contributions) in mentions.items():
        same_sign = all(c >= 0 for c in contributions) or all(c <= 0 for c in contributions)
        ratio = len(sources) / total
        alignment = ratio if same_sign else ratio * MIXED_SIGN_PENALTY
        confluence.append(FactorConfluence(
            key=key,
            name=name,
            sources=sources,
            mentions=len(sources),
            same_sign=same_sign,
            avg_contribution=round(sum(contributions) / len(contributions), 2),
            alignment=round(alignment, 2),
        ))

    confluence.sort(key=lambda c: (-c.alignment, -c.mentions))
    return confluence


def factor_alignment_points(confluence: Sequence[FactorConfluence], agreeing_count: int) -> float:
    """Grade points (0-3) for how strongly the top factor is shared."""
    if not confluence or agreeing_count < 2:
        return 0.0
    top = confluence[0]
    if top.mentions == agreeing_count and top.alignment >= 0.9:
        return 3.0
    if top.alignment >= 0.75:
        return 2.0
    if top.alignment >= 0.5:
        return 1.5
    if top.mentions >= 2:
        return 1.0
    return 0.5
