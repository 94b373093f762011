"""
ED Patient-Flow Agent - Complaint Lexicon (Declarative Keyword Rules)

Triage scoring and protocol detection both ask the same kind of question:
"does the chief complaint mention one of these terms?". Instead of scattering
string checks through the control flow, every question is expressed as an
ordered table of KeywordRule entries that can be tested on its own.

================================================================================
RULE TABLES
================================================================================

┌──────────────────────────┬──────────────────────────────────────────────────┐
│  TABLE                   │  USED BY                                         │
├──────────────────────────┼──────────────────────────────────────────────────┤
│  IMMEDIATE_THREAT_RULES  │  triage step 1 (level 1 short-circuit)           │
│  HIGH_RISK_RULES         │  triage step 2 (level 2)                         │
│  RESOURCE_RULES          │  triage step 3 (one bucket = one resource)       │
│  STROKE_RULES            │  stroke alert                                    │
│  STEMI_RULES             │  ECG-within-10-minutes alert                     │
│  INFECTION_RULES         │  sepsis screening (suspected infection)          │
│  PSYCHIATRIC_RULES       │  behavioral zone routing                         │
└──────────────────────────┴──────────────────────────────────────────────────┘

MATCHING NOTES:
───────────────
- Case-insensitive
- A keyword must start on a word boundary, so "uti" matches "UTI symptoms"
  but not "routine"; trailing text is allowed ("fall" matches "fallen")
- Whitespace inside a keyword matches any run of whitespace
- Rules are boolean gates: several hits in the same rule count once

================================================================================
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Pattern, Sequence

logger = logging.getLogger(__name__)


def _compile_keyword(keyword: str) -> Pattern:
    parts = [re.escape(p) for p in keyword.lower().split()]
    return re.compile(r"\b" + r"\s+".join(parts), re.IGNORECASE)


@dataclass(frozen=True)
class KeywordRule:
    """
    One row of a lexicon table.

    Attributes:
        name: Stable identifier used in rationale / audit messages
        keywords: Terms that trigger the rule
        outcome: What the rule means to its consumer (e.g. "labs", "level_1")
    """
    name: str
    keywords: FrozenSet[str]
    outcome: str
    _patterns: tuple = field(default=(), compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(
            self,
            "_patterns",
            tuple((kw, _compile_keyword(kw)) for kw in sorted(self.keywords)),
        )

    def first_match(self, text: str) -> Optional[str]:
        """Return the first keyword found in text, or None."""
        if not text:
            return None
        for keyword, pattern in self._patterns:
            if pattern.search(text):
                return keyword
        return None

    def matches(self, text: str) -> bool:
        return self.first_match(text) is not None


def rule(name: str, outcome: str, *keywords: str) -> KeywordRule:
    return KeywordRule(name=name, keywords=frozenset(keywords), outcome=outcome)


@dataclass(frozen=True)
class RuleHit:
    rule: KeywordRule
    keyword: str


def match_rules(text: str, rules: Sequence[KeywordRule]) -> List[RuleHit]:
    """Evaluate rules in table order; each rule contributes at most one hit."""
    hits = []
    for r in rules:
        keyword = r.first_match(text)
        if keyword is not None:
            hits.append(RuleHit(rule=r, keyword=keyword))
    if hits:
        logger.debug(
            "Lexicon hits",
            extra={"rules": [h.rule.name for h in hits], "keywords": [h.keyword for h in hits]},
        )
    return hits


def first_hit(text: str, rules: Sequence[KeywordRule]) -> Optional[RuleHit]:
    """First matching rule in table order, or None."""
    for r in rules:
        keyword = r.first_match(text)
        if keyword is not None:
            return RuleHit(rule=r, keyword=keyword)
    return None


# =============================================================================
# TRIAGE TABLES
# =============================================================================

IMMEDIATE_THREAT_RULES: List[KeywordRule] = [
    rule("cardiac_arrest", "level_1", "cardiac arrest"),
    rule("respiratory_arrest", "level_1", "respiratory arrest"),
    rule("anaphylaxis", "level_1", "anaphylaxis"),
    rule("active_seizure", "level_1", "active seizure"),
    rule("massive_hemorrhage", "level_1", "massive hemorrhage"),
    rule("airway_obstruction", "level_1", "airway obstruction"),
]

HIGH_RISK_RULES: List[KeywordRule] = [
    rule("chest_pain", "level_2", "chest pain"),
    rule("stroke_symptoms", "level_2", "stroke symptoms"),
    rule("dyspnea", "level_2", "dyspnea", "difficulty breathing"),
    rule("suicidal", "level_2", "suicidal"),
    rule("homicidal", "level_2", "homicidal"),
    rule("overdose", "level_2", "overdose"),
    rule("major_trauma", "level_2", "major trauma"),
    rule("severe_allergic_reaction", "level_2", "severe allergic reaction"),
    rule("syncope", "level_2", "syncope"),
    rule("gi_bleed", "level_2", "gi bleed"),
]

# Buckets overlap on purpose: "pain" implies labs, imaging and analgesia.
RESOURCE_RULES: List[KeywordRule] = [
    rule("labs_likely", "labs", "pain", "fever", "infection", "weakness", "dizziness"),
    rule("imaging_likely", "imaging", "pain", "injury", "fall", "trauma", "headache", "chest"),
    rule("iv_medications_likely", "iv_medications", "pain", "nausea", "dehydration", "fever"),
    rule("procedure_likely", "procedure", "laceration", "abscess", "fracture", "dislocation"),
]


# =============================================================================
# PROTOCOL TABLES
# =============================================================================

STROKE_RULES: List[KeywordRule] = [
    rule("stroke", "stroke_alert", "stroke", "weakness", "speech", "facial droop"),
]

STEMI_RULES: List[KeywordRule] = [
    rule("stemi", "stemi_alert", "chest pain", "cardiac"),
]

INFECTION_RULES: List[KeywordRule] = [
    rule("suspected_infection", "infection", "fever", "infection", "uti", "pneumonia", "cellulitis", "sepsis"),
]

PSYCHIATRIC_RULES: List[KeywordRule] = [
    rule(
        "behavioral_health",
        "behavioral",
        "suicidal", "homicidal", "psychosis", "psychotic", "hallucination",
        "agitation", "agitated", "self harm", "self-harm",
    ),
]
