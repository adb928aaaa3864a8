from packages.messaging.business_hours import BusinessHours, DaySchedule, is_within_business_hours
from packages.messaging.keywords import (
    OPT_IN_CONFIRMATION,
    OPT_OUT_CONFIRMATION,
    OPT_OUT_INSTRUCTIONS,
    KeywordAction,
    detect_keyword_action,
)
from packages.messaging.phone import InvalidPhoneNumberError, is_e164, mask_phone, normalize_phone
from packages.messaging.rate_limiter import TokenBucket
from packages.messaging.templates import (
    DEFAULT_TEMPLATES,
    TemplateDefinition,
    TemplateRenderError,
    estimate_sms_cost,
    extract_variables,
    missing_variables,
    render_template,
    sms_segments,
)
from packages.messaging.webhooks import (
    Channel,
    NormalizedInbound,
    NormalizedStatus,
    NormalizedWebhook,
    StatusKind,
    parse_twilio_sms_webhook,
    parse_whatsapp_webhook,
    twilio_signature,
    verify_twilio_signature,
    verify_whatsapp_signature,
)

__all__ = [
    "BusinessHours",
    "Channel",
    "DEFAULT_TEMPLATES",
    "DaySchedule",
    "InvalidPhoneNumberError",
    "KeywordAction",
    "NormalizedInbound",
    "NormalizedStatus",
    "NormalizedWebhook",
    "OPT_IN_CONFIRMATION",
    "OPT_OUT_CONFIRMATION",
    "OPT_OUT_INSTRUCTIONS",
    "StatusKind",
    "TemplateDefinition",
    "TemplateRenderError",
    "TokenBucket",
    "detect_keyword_action",
    "estimate_sms_cost",
    "extract_variables",
    "is_e164",
    "is_within_business_hours",
    "mask_phone",
    "missing_variables",
    "normalize_phone",
    "parse_twilio_sms_webhook",
    "parse_whatsapp_webhook",
    "render_template",
    "sms_segments",
    "twilio_signature",
    "verify_twilio_signature",
    "verify_whatsapp_signature",
]
