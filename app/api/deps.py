from typing import Optional
from app.core.config import settings
from app.services.reconciliation import SubscriptionReconciliationEngine, build_reconciliation_engine

_engine: Optional[SubscriptionReconciliationEngine] = None


def get_reconciliation_engine() -> SubscriptionReconciliationEngine:
    """Process-wide engine, built on first use."""
    global _engine
    if _engine is None:
        _engine = build_reconciliation_engine(settings)
    return _engine
