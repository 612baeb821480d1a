"""
PickCast Signal Engine.

Components:
- aggregator: weighted factor contributions → directional confidence (0-5),
  with interchangeable signed-signal and over/under scoring policies
"""
