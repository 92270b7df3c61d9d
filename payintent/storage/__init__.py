"""
Persistence for payment intents and their audit events.
"""
from .models import Base, EventRecord, IntentRecord
from .store import (
    DEFAULT_DATABASE_URL,
    EVENT_INTENT_CREATED,
    EVENT_INTENT_VERIFIED,
    EVENT_INTENT_VERIFY_ERROR,
    IntentStore,
)

__all__ = [
    "Base",
    "EventRecord",
    "IntentRecord",
    "IntentStore",
    "DEFAULT_DATABASE_URL",
    "EVENT_INTENT_CREATED",
    "EVENT_INTENT_VERIFIED",
    "EVENT_INTENT_VERIFY_ERROR",
]
