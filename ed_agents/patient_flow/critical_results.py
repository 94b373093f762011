"""
ED Patient-Flow Agent - Critical Value Detection

Completed lab results are checked against a table of critical values. A hit
raises a critical_result alert and pages the assigned physician.

    Analyte       Critical when
    ──────────    ─────────────────
    Troponin      positive
    Potassium     < 2.5 or > 6
    Glucose       < 40 or > 500
    Hemoglobin    < 7
    Platelets     < 50
    INR           > 5
    Lactate       > 4

The analyte can be named in the result text itself ("Potassium 7.2 mmol/L")
or only in the order description with a bare numeric result ("7.2 mmol/L").
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple

_NUMBER = re.compile(r"(?<![\w.])([<>])?=?\s*(\d+(?:\.\d+)?)")

# "not detected", "non-elevated" and "no positive" are normal reports
_POSITIVE = re.compile(
    r"(?<!\bnot )(?<!\bno )(?<!\bnon-)(?<!\bnon )\b(positive|elevated|detected)\b", re.IGNORECASE
)


@dataclass(frozen=True)
class CriticalValueRule:
    """
    One analyte in the critical value table.

    Numeric rules trip when the first number reported after the analyte name
    is below `low` or above `high`. A result reported against the assay limit
    ("<2.5", ">500") trips when the limit itself sits at or beyond the bound on
    the side the comparator points to. Qualitative rules trip when
    `qualitative` matches the result text.
    """
    analyte: str
    name_pattern: Pattern
    low: Optional[float] = None
    high: Optional[float] = None
    qualitative: Optional[Pattern] = None

    def _value(self, text: str, description: str) -> Optional[Tuple[str, float]]:
        named = self.name_pattern.search(text)
        if named:
            match = _NUMBER.search(text, named.end())
        elif self.name_pattern.search(description):
            match = _NUMBER.search(text)
        else:
            return None
        if not match:
            return None
        return match.group(1) or "", float(match.group(2))

    def applies_to(self, text: str, description: str) -> bool:
        return bool(self.name_pattern.search(text) or self.name_pattern.search(description))

    def is_critical(self, result: str, description: str = "") -> bool:
        if not self.applies_to(result, description):
            return False
        if self.qualitative is not None:
            return bool(self.qualitative.search(result))
        reported = self._value(result, description)
        if reported is None:
            return False
        comparator, value = reported
        if comparator == "<":
            return self.low is not None and value <= self.low
        if comparator == ">":
            return self.high is not None and value >= self.high
        return (self.low is not None and value < self.low) or (self.high is not None and value > self.high)


def _name(pattern: str) -> Pattern:
    return re.compile(pattern, re.IGNORECASE)


CRITICAL_VALUE_RULES: List[CriticalValueRule] = [
    CriticalValueRule("troponin", _name(r"\btroponin"), qualitative=_POSITIVE),
    CriticalValueRule("potassium", _name(r"\b(potassium|k\+)"), low=2.5, high=6),
    CriticalValueRule("glucose", _name(r"\bglucose"), low=40, high=500),
    CriticalValueRule("hemoglobin", _name(r"\b(hemoglobin|haemoglobin|hgb)\b(?!\s*a1c)"), low=7),
    CriticalValueRule("platelets", _name(r"\b(platelets?|plt)\b"), low=50),
    CriticalValueRule("inr", _name(r"\binr\b"), high=5),
    CriticalValueRule("lactate", _name(r"\b(lactate|lactic acid)\b"), high=4),
]


def critical_findings(result: str, description: str = "") -> List[str]:
    """Names of the analytes whose reported value is critical."""
    if not result:
        return []
    return [r.analyte for r in CRITICAL_VALUE_RULES if r.is_critical(result, description)]


def is_critical_result(result: str, description: str = "") -> bool:
    return bool(critical_findings(result, description))
