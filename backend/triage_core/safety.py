from __future__ import annotations

import re

EMERGENCY_SENTENCE = (
    "Appelez immédiatement les urgences (SAMU / numéro local). "
    "Ne vous fiez pas uniquement à cette application."
)

RED_FLAG_PATTERNS = [
    re.compile(r"douleur(s)? (thoracique|à la poitrine)", re.IGNORECASE),
    re.compile(r"d[ée]tresse respiratoire", re.IGNORECASE),
    re.compile(r"(ne (peux|peut|parvient) plus|impossible de) respirer", re.IGNORECASE),
    re.compile(r"perte de connaissance|évanoui|inconscient", re.IGNORECASE),
    re.compile(r"saignement(s)? (abondant|important|massif)|hémorragie", re.IGNORECASE),
    re.compile(r"paralysie|visage (paralysé|déformé)|trouble(s)? de la parole", re.IGNORECASE),
    re.compile(r"convulsion", re.IGNORECASE),
    re.compile(r"chest pain", re.IGNORECASE),
    re.compile(r"can(no|')t breathe|shortness of breath at rest", re.IGNORECASE),
    re.compile(r"stroke|severe bleeding|loss of consciousness|anaphyla", re.IGNORECASE),
    re.compile(r"suicid|self[- ]?harm|overdose", re.IGNORECASE),
]

_ESCALATION_MARKERS = [
    re.compile(r"appelez (immédiatement )?(les )?(services d.)?urgences", re.IGNORECASE),
    re.compile(r"\bSAMU\b|\b112\b", re.IGNORECASE),
    re.compile(r"call (911|emergency services)", re.IGNORECASE),
]

# A denial only covers the clause it appears in.
_CLAUSE_BREAK = re.compile(r"[.;:!?,\n]|\bmais\b|\bbut\b", re.IGNORECASE)
_NEGATION_CUE = re.compile(
    r"\b(pas|sans|aucun|aucune|jamais|ni|non|no|not|without|never|denies)\b|n't\b",
    re.IGNORECASE,
)


def _clause_before(text: str, index: int) -> str:
    start = 0
    for brk in _CLAUSE_BREAK.finditer(text, 0, index):
        start = brk.end()
    return text[start:index]


def is_negated(text: str, index: int) -> bool:
    return bool(_NEGATION_CUE.search(_clause_before(text, index)))


def detect_red_flags(text: str | None) -> list[str]:
    cleaned = (text or "").strip()
    if not cleaned:
        return []
    hits: list[str] = []
    for pattern in RED_FLAG_PATTERNS:
        for match in pattern.finditer(cleaned):
            if not is_negated(cleaned, match.start()):
                hits.append(match.group(0).lower())
                break
    return hits


def has_escalation_sentence(text: str | None) -> bool:
    cleaned = (text or "").strip()
    return any(pattern.search(cleaned) for pattern in _ESCALATION_MARKERS)
