from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from typing import assert_never

from .schema import (
    AllMessagesTrigger,
    BusinessHoursTrigger,
    FirstContactTrigger,
    InboundEvent,
    KeywordTrigger,
    RuleDefinition,
    RuleMatch,
    Trigger,
)

DEFAULT_FIRST_CONTACT_WINDOW = timedelta(minutes=5)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def matches_keyword(text: str, keywords: tuple[str, ...]) -> bool:
    lowered = (text or "").strip().lower()
    if not lowered:
        return False
    for keyword in keywords:
        if lowered == keyword or keyword in lowered:
            return True
        if re.search(rf"\b{re.escape(keyword)}\b", lowered):
            return True
    return False


def is_first_contact(event: InboundEvent, window: timedelta = DEFAULT_FIRST_CONTACT_WINDOW) -> bool:
    age = _aware(event.now) - _aware(event.conversation_created_at)
    # Clock skew between hosts can make the age negative; that still counts.
    return age < window


def trigger_matches(
    trigger: Trigger,
    event: InboundEvent,
    first_contact_window: timedelta = DEFAULT_FIRST_CONTACT_WINDOW,
) -> bool:
    match trigger:
        case KeywordTrigger(keywords=keywords):
            return matches_keyword(event.text, keywords)
        case BusinessHoursTrigger():
            return not event.within_business_hours
        case FirstContactTrigger():
            return is_first_contact(event, first_contact_window)
        case AllMessagesTrigger():
            return True
        case _:
            assert_never(trigger)


def order_rules(rules: list[RuleDefinition]) -> list[RuleDefinition]:
    return sorted(rules, key=lambda rule: rule.priority, reverse=True)


def evaluate_rules(
    rules: list[RuleDefinition],
    event: InboundEvent,
    first_contact_window: timedelta = DEFAULT_FIRST_CONTACT_WINDOW,
) -> RuleMatch | None:
    """Return the highest-priority rule whose trigger matches, if any."""
    for rule in order_rules(rules):
        if rule.business_hours_only and not event.within_business_hours:
            continue
        if trigger_matches(rule.trigger, event, first_contact_window):
            return RuleMatch(rule=rule, reason=f"trigger:{rule.trigger.type}")
    return None
