"""
Weekly Settlement & Payout Engine

Aggregates delivered orders per restaurant into an idempotent weekly ledger,
computes the commission/net split exactly, and drives each ledger row through
the payout lifecycle against an external payout gateway.

Components:
- Week calculator: ISO year-week numbers, week boundaries, due dates
- Aggregator: per-restaurant gross/commission/net for a week
- Settlement store: idempotent, transactional weekly upserts
- Payout orchestrator: guarded pending -> processing -> completed/failed
- Reconciliation: resolution of ambiguous gateway outcomes
"""

__version__ = "0.1.0"
__author__ = "ML Roadmap Bootcamp"
