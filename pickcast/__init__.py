"""
PickCast — Idempotent pick decision core.

Architecture:
    pickcast/
    ├── db/              # SQLAlchemy engine, compat types, ORM models
    ├── store/           # Record store contract (memory + SQL implementations)
    ├── ledger/          # Execution ledger (exactly-once step results)
    ├── engine/          # Signal aggregator (scoring policies)
    ├── pipeline/        # Per-source step pipeline, providers, TTL cache
    └── consensus/       # Cross-source consensus (conflict, confluence, tiers)

Module Boundaries:
    - Providers are DATA ONLY — factor and market providers return values, never decisions
    - Every guarded step result is recorded once and replayed verbatim
    - Every decision has an append-only audit record
    - Units of 0 mean PASS; consensus blocks are never sized

Data Flow:
    Providers → Aggregator → Pipeline (one source) → Decision Record
    Decision Records (many sources) → Consensus Engine → Decision Record

Version: 1.0.0
"""

__version__ = "1.0.0"
