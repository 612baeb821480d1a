"""
Side Parsing and Grouping Tests.
"""

import pytest

from pickcast.consensus.sides import (
    OVER,
    UNDER,
    UNKNOWN,
    base_kind,
    format_selection,
    group_by_side,
    matches_kind,
    normalize_team,
    parse_side,
)


class TestParsing:

    @pytest.mark.parametrize("selection, side, line", [
        ("OVER 220.5", OVER, 220.5),
        ("under 219", UNDER, 219.0),
        ("o/u 220.5", UNKNOWN, 220.5),
    ])
    def test_totals(self, selection, side, line):
        assert parse_side(selection, "total") == (side, line)

    def test_spread_team_and_signed_line(self):
        assert parse_side("BRK +3.5", "spread") == ("BKN", 3.5)
        assert parse_side("LAL -4.5", "spread") == ("LAL", -4.5)

    def test_moneyline_alias(self):
        assert parse_side("gs", "moneyline") == ("GSW", None)

    def test_kind_spellings(self):
        assert base_kind("total_over") == "total"
        assert base_kind("spread") == "spread"
        assert matches_kind("total_under", "total")
        assert not matches_kind("spread", "total")

    def test_normalize_team(self):
        assert normalize_team(" pho ") == "PHX"
        assert normalize_team("LAL") == "LAL"

    def test_format_selection(self):
        assert format_selection("total", OVER, 220.5) == "OVER 220.5"
        assert format_selection("spread", "BOS", 4.5) == "BOS +4.5"
        assert format_selection("moneyline", "BOS", None) == "BOS"


class TestGrouping:

    def test_totals_oppose_each_other(self, make_pick):
        picks = [
            make_pick("a", "OVER 220.5"),
            make_pick("b", "OVER 221"),
            make_pick("c", "UNDER 220.5"),
        ]
        groups = {g.side: g for g in group_by_side(picks, "total")}

        assert [p.source for p in groups[OVER].agreeing] == ["a", "b"]
        assert [p.source for p in groups[OVER].disagreeing] == ["c"]
        assert [p.source for p in groups[UNDER].disagreeing] == ["a", "b"]
        assert groups[OVER].line == 220.5
        assert groups[OVER].key == "G1_total_OVER"

    def test_aliases_share_a_group(self, make_pick):
        picks = [
            make_pick("a", "BRK +3.5", kind="spread"),
            make_pick("b", "BKN +3.5", kind="spread"),
        ]
        groups = group_by_side(picks, "spread")
        assert len(groups) == 1
        assert groups[0].side == "BKN"

    def test_spread_opposes_every_other_side(self, make_pick):
        picks = [
            make_pick("a", "LAL -4.5", kind="spread"),
            make_pick("b", "BOS +4.5", kind="spread"),
            make_pick("c", "BOS +5", kind="spread"),
        ]
        groups = {g.side: g for g in group_by_side(picks, "spread")}
        assert len(groups["LAL"].disagreeing) == 2
        assert len(groups["BOS"].disagreeing) == 1

    def test_other_kinds_and_unknown_sides_ignored(self, make_pick):
        picks = [
            make_pick("a", "OVER 220.5"),
            make_pick("b", "LAL -4.5", kind="spread"),
            make_pick("c", "pass 220.5"),
        ]
        groups = group_by_side(picks, "total")
        assert [g.side for g in groups] == [OVER]

    def test_groups_sorted_by_entity_and_side(self, make_pick):
        picks = [
            make_pick("a", "UNDER 210", entity_id="G2"),
            make_pick("b", "OVER 220", entity_id="G1"),
            make_pick("c", "UNDER 220", entity_id="G1"),
        ]
        keys = [(g.entity_id, g.side) for g in group_by_side(picks, "total")]
        assert keys == [("G1", OVER), ("G1", UNDER), ("G2", UNDER)]

    def test_record_line_takes_precedence(self, make_pick):
        groups = group_by_side([make_pick("a", "OVER 220.5", line=221.0)], "total")
        assert groups[0].line == 221.0
