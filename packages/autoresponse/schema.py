from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class TriggerType(StrEnum):
    KEYWORD = "keyword"
    BUSINESS_HOURS = "business_hours"
    FIRST_CONTACT = "first_contact"
    ALL_MESSAGES = "all_messages"


class KeywordTrigger(BaseModel):
    type: Literal["keyword"] = "keyword"
    keywords: tuple[str, ...] = Field(min_length=1)

    @field_validator("keywords")
    @classmethod
    def normalize_keywords(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(keyword.strip().lower() for keyword in value if keyword and keyword.strip())
        if not cleaned:
            raise ValueError("at least one non-empty keyword is required")
        return cleaned


class BusinessHoursTrigger(BaseModel):
    type: Literal["business_hours"] = "business_hours"


class FirstContactTrigger(BaseModel):
    type: Literal["first_contact"] = "first_contact"


class AllMessagesTrigger(BaseModel):
    type: Literal["all_messages"] = "all_messages"


Trigger = Annotated[
    KeywordTrigger | BusinessHoursTrigger | FirstContactTrigger | AllMessagesTrigger,
    Field(discriminator="type"),
]

TRIGGER_ADAPTER: TypeAdapter[Trigger] = TypeAdapter(Trigger)


class RuleDefinition(BaseModel):
    id: uuid.UUID
    name: str
    trigger: Trigger
    priority: int = 0
    business_hours_only: bool = False
    response_body: str | None = None
    template_name: str | None = None
    template_variables: dict[str, str] = Field(default_factory=dict)


class InboundEvent(BaseModel):
    tenant_id: uuid.UUID
    conversation_id: uuid.UUID
    phone_number: str
    text: str = ""
    conversation_created_at: datetime
    within_business_hours: bool
    now: datetime


class RuleMatch(BaseModel):
    rule: RuleDefinition
    reason: str
