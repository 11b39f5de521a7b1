"""Background workers for scheduled settlement processing."""
from .reconciliation_worker import start_reconciliation_worker
from .settlement_worker import start_settlement_worker

__all__ = ["start_reconciliation_worker", "start_settlement_worker"]
