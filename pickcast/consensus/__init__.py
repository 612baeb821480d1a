"""
PickCast Consensus Engine.

Components:
- sides: selection parsing, team aliases, grouping by side
- conflict: agreement/conflict policy table, counter-thesis
- confluence: shared top factors across agreeing sources
- sizing: tier-weighted units and confidence
- grading: 12-point tier grade, track records
- engine: per-entity resolution
- eligibility / service: store-backed consensus sweep
"""
