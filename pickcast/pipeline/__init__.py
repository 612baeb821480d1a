"""
Step pipeline: intake, snapshot, factors, prediction, market edge, decision
and audit for a single source.
"""
