from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any

VARIABLE_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

SMS_SINGLE_SEGMENT_CHARS = 160
SMS_CONCAT_SEGMENT_CHARS = 153
DEFAULT_COST_PER_SEGMENT = 0.0075


class TemplateRenderError(ValueError):
    def __init__(self, template_name: str, missing: list[str]) -> None:
        joined = ", ".join(missing)
        super().__init__(f"template '{template_name}' is missing variables: {joined}")
        self.template_name = template_name
        self.missing = missing


@dataclass(frozen=True)
class TemplateDefinition:
    name: str
    category: str
    body_text: str
    variables: tuple[str, ...] = field(default_factory=tuple)
    language: str = "pt_BR"
    footer_text: str | None = None


def extract_variables(body_text: str) -> list[str]:
    """Return variable names in first-seen order without duplicates."""
    seen: list[str] = []
    for match in VARIABLE_PATTERN.finditer(body_text):
        name = match.group(1)
        if name not in seen:
            seen.append(name)
    return seen


def missing_variables(required: list[str] | tuple[str, ...], variables: dict[str, Any] | None) -> list[str]:
    provided = variables or {}
    missing: list[str] = []
    for name in required:
        value = provided.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def render_template(
    body_text: str,
    variables: dict[str, Any] | None,
    required: list[str] | tuple[str, ...] | None = None,
    template_name: str = "inline",
) -> str:
    required_names = list(required) if required is not None else extract_variables(body_text)
    missing = missing_variables(required_names, variables)
    if missing:
        raise TemplateRenderError(template_name, missing)

    values = variables or {}

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in values or values[name] is None:
            return match.group(0)
        return str(values[name])

    return VARIABLE_PATTERN.sub(_substitute, body_text)


def sms_segments(message: str) -> int:
    length = len(message)
    if length == 0:
        return 0
    if length <= SMS_SINGLE_SEGMENT_CHARS:
        return 1
    return math.ceil(length / SMS_CONCAT_SEGMENT_CHARS)


def estimate_sms_cost(message: str, cost_per_segment: float = DEFAULT_COST_PER_SEGMENT) -> float:
    return round(sms_segments(message) * cost_per_segment, 4)


DEFAULT_TEMPLATES: tuple[TemplateDefinition, ...] = (
    TemplateDefinition(
        name="welcome_message",
        category="leads",
        body_text=(
            "Olá {{nome}}! Bem-vindo(a) à {{empresa}}. Estamos aqui para ajudá-lo a encontrar "
            "o imóvel perfeito. Como podemos ajudar?"
        ),
        variables=("nome", "empresa"),
    ),
    TemplateDefinition(
        name="visit_reminder",
        category="visits",
        body_text=(
            "Oi {{nome}}! Lembrando que você tem uma visita agendada para {{data}} às {{hora}} "
            "no imóvel {{imovel}}. Endereço: {{endereco}}. Confirma sua presença?"
        ),
        variables=("nome", "data", "hora", "imovel", "endereco"),
    ),
    TemplateDefinition(
        name="visit_confirmation",
        category="visits",
        body_text=(
            "Perfeito {{nome}}! Sua visita ao imóvel {{imovel}} está confirmada para {{data}} "
            "às {{hora}}. Nos vemos lá!"
        ),
        variables=("nome", "imovel", "data", "hora"),
    ),
    TemplateDefinition(
        name="property_match",
        category="properties",
        body_text=(
            "Oi {{nome}}! Encontrei um imóvel que pode ser perfeito para você: {{imovel}} - "
            "{{endereco}}. Valor: {{valor}}. Quer agendar uma visita?"
        ),
        variables=("nome", "imovel", "endereco", "valor"),
    ),
    TemplateDefinition(
        name="payment_reminder",
        category="payments",
        body_text=(
            "Olá {{nome}}! Lembrete: o pagamento do imóvel {{imovel}} vence em {{data}}. "
            "Valor: {{valor}}. Caso já tenha pago, desconsidere esta mensagem."
        ),
        variables=("nome", "imovel", "data", "valor"),
    ),
    TemplateDefinition(
        name="follow_up",
        category="leads",
        body_text=(
            "Oi {{nome}}! Tudo bem? Estou passando para saber se você ainda está procurando "
            "imóvel. Quando você tem um tempo para conversarmos?"
        ),
        variables=("nome",),
    ),
)
