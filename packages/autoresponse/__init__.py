from packages.autoresponse.engine import (
    DEFAULT_FIRST_CONTACT_WINDOW,
    evaluate_rules,
    is_first_contact,
    matches_keyword,
    order_rules,
    trigger_matches,
)
from packages.autoresponse.schema import (
    TRIGGER_ADAPTER,
    AllMessagesTrigger,
    BusinessHoursTrigger,
    FirstContactTrigger,
    InboundEvent,
    KeywordTrigger,
    RuleDefinition,
    RuleMatch,
    Trigger,
    TriggerType,
)

__all__ = [
    "AllMessagesTrigger",
    "BusinessHoursTrigger",
    "DEFAULT_FIRST_CONTACT_WINDOW",
    "FirstContactTrigger",
    "InboundEvent",
    "KeywordTrigger",
    "RuleDefinition",
    "RuleMatch",
    "TRIGGER_ADAPTER",
    "Trigger",
    "TriggerType",
    "evaluate_rules",
    "is_first_contact",
    "matches_keyword",
    "order_rules",
    "trigger_matches",
]
