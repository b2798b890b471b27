"""
Usage metering: billing periods, counter stores and the quota ledger.
"""

from .ledger import PlanDirectory, QuotaLedger
from .models import CounterState, UsageSnapshot
from .stores import InMemoryUsageStore, UsageStore

__all__ = [
    "CounterState",
    "InMemoryUsageStore",
    "PlanDirectory",
    "QuotaLedger",
    "UsageSnapshot",
    "UsageStore",
]
