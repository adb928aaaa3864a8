from __future__ import annotations

import re
import unicodedata
from enum import StrEnum

STOP_KEYWORDS: frozenset[str] = frozenset(
    {"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT", "PARAR", "CANCELAR", "SAIR"}
)
START_KEYWORDS: frozenset[str] = frozenset(
    {"START", "YES", "UNSTOP", "SUBSCRIBE", "SIM", "COMECAR", "INICIAR"}
)

OPT_OUT_CONFIRMATION = (
    "Você foi descadastrado e não receberá mais mensagens. Para voltar a receber, responda START."
)
OPT_IN_CONFIRMATION = "Você foi recadastrado e voltará a receber mensagens. Para cancelar, responda STOP."
OPT_OUT_INSTRUCTIONS = "Responda STOP para cancelar."

_TRAILING_PUNCTUATION = re.compile(r"[\s.!?,;:]+$")
_STOP_PATTERN = re.compile(r"\b(?:" + "|".join(sorted(STOP_KEYWORDS)) + r")\b")


class KeywordAction(StrEnum):
    OPT_OUT = "opt_out"
    OPT_IN = "opt_in"


def normalize_keyword_text(body: str) -> str:
    decomposed = unicodedata.normalize("NFKD", body or "")
    ascii_only = "".join(char for char in decomposed if not unicodedata.combining(char))
    return _TRAILING_PUNCTUATION.sub("", ascii_only.strip()).upper()


def detect_keyword_action(body: str | None) -> KeywordAction | None:
    """STOP keywords match as whole words anywhere; START only as the whole body."""
    if not body:
        return None
    normalized = normalize_keyword_text(body)
    if _STOP_PATTERN.search(normalized):
        return KeywordAction.OPT_OUT
    if normalized in START_KEYWORDS:
        return KeywordAction.OPT_IN
    return None
