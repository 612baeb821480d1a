"""
Side parsing, grouping and selection formatting.

Selections arrive as free text ("OVER 220.5", "BRK +3.5", "GS"). Each is
reduced to a normalized side (team aliases resolved) so picks from different
sources land in the same group.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, NamedTuple, Optional

from pickcast.consensus.schemas import PickSourceRecord

# ── Configuration ─────────────────────────────────────────────────────────

TEAM_ALIASES: dict[str, str] = {
    "BRK": "BKN", "CHO": "CHA", "GS": "GSW", "LOS": "LAC",
    "NOR": "NOP", "NO": "NOP", "NY": "NYK", "PHO": "PHX",
    "SAN": "SAS", "SA": "SAS",
}

OVER = "OVER"
UNDER = "UNDER"
UNKNOWN = "UNKNOWN"

TOTAL = "total"
SPREAD = "spread"
MONEYLINE = "moneyline"

_FIRST_NUMBER = re.compile(r"(\d+\.?\d*)")
_TRAILING_SIGNED_NUMBER = re.compile(r"([+-]?\d+\.?\d*)$")


class ParsedSide(NamedTuple):
    side: str
    line: Optional[float]


def normalize_team(abbrev: str) -> str:
    upper = abbrev.strip().upper()
    return TEAM_ALIASES.get(upper, upper)


def base_kind(kind: str) -> str:
    """``total_over`` / ``total_under`` → ``total``."""
    for suffix in ("_over", "_under"):
        if kind.endswith(suffix):
            return kind[: -len(suffix)]
    return kind


def matches_kind(kind: str, wanted: str) -> bool:
    return kind in (wanted, f"{wanted}_over", f"{wanted}_under")


def parse_side(selection: str, kind: str) -> ParsedSide:
    """Extract the normalized side and line from a selection string."""
    kind = base_kind(kind)
    text = selection.strip()
    upper = text.upper()

    if kind == TOTAL:
        match = _FIRST_NUMBER.search(text)
        line = float(match.group(1)) if match else None
        if OVER in upper:
            return ParsedSide(OVER, line)
        if UNDER in upper:
            return ParsedSide(UNDER, line)
        return ParsedSide(UNKNOWN, line)

    if kind == SPREAD:
        parts = text.split()
        team = normalize_team(parts[0]) if parts else UNKNOWN
        match = _TRAILING_SIGNED_NUMBER.search(text)
        return ParsedSide(team, float(match.group(1)) if match else None)

    if kind == MONEYLINE:
        return ParsedSide(normalize_team(text) if text else UNKNOWN, None)

    return ParsedSide(UNKNOWN, None)


def format_selection(kind: str, side: str, line: Optional[float] = None) -> str:
    """Render a side back into selection text."""
    kind = base_kind(kind)
    if kind == TOTAL:
        return f"{side} {line:.1f}" if line is not None else side
    if kind == SPREAD:
        return f"{side} {line:+.1f}" if line is not None else side
    return side


# ── Grouping ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConsensusGroup:
    """Picks sharing (entity, kind, side), plus the picks opposing them."""
    entity_id: str
    kind: str
    side: str
    line: Optional[float]
    agreeing: list[PickSourceRecord] = field(default_factory=list)
    disagreeing: list[PickSourceRecord] = field(default_factory=list)

    @property
    def key(self) -> str:
        return group_key(self.entity_id, self.kind, self.side)


def group_key(entity_id: str, kind: str, side: str) -> str:
    return f"{entity_id}_{kind}_{side}"


def side_of(record: PickSourceRecord) -> ParsedSide:
    parsed = parse_side(record.selection, record.kind)
    line = record.line if record.line is not None else parsed.line
    return ParsedSide(parsed.side, line)


def group_by_side(records: Iterable[PickSourceRecord], kind: str) -> list[ConsensusGroup]:
    """
    Bucket records of ``kind`` by normalized side and pair each bucket with
    its complement.

    Totals oppose OVER with UNDER; spreads and moneylines oppose every other
    side of the same entity. Groups come back sorted by (entity, side) so
    evaluation order is deterministic. Unparseable selections are ignored.
    """
    kind = base_kind(kind)
    buckets: dict[tuple[str, str], list[PickSourceRecord]] = {}
    lines: dict[tuple[str, str], Optional[float]] = {}
    for record in records:
        if not matches_kind(record.kind, kind):
            continue
        parsed = side_of(record)
        if parsed.side == UNKNOWN:
            continue
        ident = (record.entity_id, parsed.side)
        buckets.setdefault(ident, []).append(record)
        if lines.get(ident) is None:
            lines[ident] = parsed.line

    groups: list[ConsensusGroup] = []
    for (entity_id, side) in sorted(buckets):
        if kind == TOTAL:
            opposite = UNDER if side == OVER else OVER
            disagreeing = list(buckets.get((entity_id, opposite), []))
        else:
            disagreeing = [
                r
                for (other_entity, other_side), members in sorted(buckets.items())
                if other_entity == entity_id and other_side != side
                for r in members
            ]
        groups.append(ConsensusGroup(
            entity_id=entity_id,
            kind=kind,
            side=side,
            line=lines.get((entity_id, side)),
            agreeing=list(buckets[(entity_id, side)]),
            disagreeing=disagreeing,
        ))
    return groups
