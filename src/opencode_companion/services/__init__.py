"""Context synchronization services."""

from opencode_companion.services.context_service import ContextSynchronizer, SyncOutcome
from opencode_companion.services.push_scheduler import ContextPushScheduler

__all__ = ["ContextPushScheduler", "ContextSynchronizer", "SyncOutcome"]
