"""
ED Patient-Flow Agent - Triage Scoring (ESI / CIMU)

Maps a TriageAssessment to a discrete triage level (1-5) and a numeric score
(0-100). The function is pure: no I/O, no clock, no hidden state. Calling it
twice on the same assessment yields the same result.

================================================================================
ALGORITHM (strict priority order)
================================================================================

    1. IMMEDIATE INTERVENTION ── GCS <= 8, HR == 0, RR == 0, SpO2 < 85,
                                 or an immediate-threat complaint
                                 ──► level 1, score 100 (stop)

    2. HIGH RISK ─────────────── GCS < 15, pain >= 8, high-risk complaint,
                                 or immunocompromised with T >= 38 °C
                                 ──► level 2, score 80 (stop)

    3. RESOURCE NEEDS ────────── labs / imaging / IV-meds / procedure buckets
                                 >= 2 ──► level 3 (60)
                                 == 1 ──► level 4 (40)
                                 == 0 ──► level 5 (20)

    4. VITAL ESCALATION ──────── worst bracket per vital, summed
                                 > 0 ──► level - 1 (floor 1), score += sub-score

    5. ACUITY FACTORS ────────── increase: score += points,
                                           points >= 20 and level > 2 ──► level - 1
                                 decrease: score -= points

    6. CLAMP ─────────────────── score to [0, 100], level to [1, 5]

Both downward adjustments (steps 4 and 5) can apply in one call. Step 4 floors
at 1 and step 5 only fires above level 2, so a single call can never push the
level below 1.
================================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import AcuityLevel
from .errors import ValidationError
from .lexicon import (
    HIGH_RISK_RULES,
    IMMEDIATE_THREAT_RULES,
    RESOURCE_RULES,
    first_hit,
    match_rules,
)
from .models import FactorImpact, TriageAssessment, Vitals

logger = logging.getLogger(__name__)


# =============================================================================
# VITAL SIGN BRACKETS
# =============================================================================

@dataclass(frozen=True)
class VitalBracket:
    """
    Two-tier abnormality bracket for one vital sign.

    A value outside the mild range scores mild_points; outside the severe
    range it scores severe_points instead (never both). A bound of None means
    the range is open on that side.
    """
    name: str
    attribute: str
    mild_range: Tuple[Optional[float], Optional[float]]
    mild_points: int
    severe_range: Tuple[Optional[float], Optional[float]]
    severe_points: int

    @staticmethod
    def _outside(value: float, bounds: Tuple[Optional[float], Optional[float]]) -> bool:
        low, high = bounds
        return (low is not None and value < low) or (high is not None and value > high)

    def points(self, value: Optional[float]) -> int:
        if value is None:
            return 0
        if self._outside(value, self.severe_range):
            return self.severe_points
        if self._outside(value, self.mild_range):
            return self.mild_points
        return 0

    def is_severe(self, value: Optional[float]) -> bool:
        return value is not None and self._outside(value, self.severe_range)


VITAL_BRACKETS: List[VitalBracket] = [
    VitalBracket("heart_rate", "heart_rate", (50, 120), 10, (40, 150), 20),
    VitalBracket("systolic_bp", "systolic_bp", (90, 180), 10, (80, 200), 20),
    VitalBracket("respiratory_rate", "respiratory_rate", (10, 24), 10, (8, 30), 20),
    VitalBracket("oxygen_saturation", "oxygen_saturation", (94, None), 10, (90, None), 20),
    VitalBracket("temperature", "temperature", (36, 38.5), 5, (35, 40), 15),
]


@dataclass(frozen=True)
class TriageResult:
    """Outcome of triage scoring."""
    level: int
    score: int
    rationale: Tuple[str, ...] = ()
    resource_count: int = 0
    vital_subscore: int = 0
    short_circuit: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "label": AcuityLevel.get_label(self.level),
            "score": self.score,
            "rationale": list(self.rationale),
            "resource_count": self.resource_count,
            "vital_subscore": self.vital_subscore,
            "short_circuit": self.short_circuit,
        }


# =============================================================================
# INDIVIDUAL GATES
# =============================================================================

def immediate_intervention_reason(assessment: TriageAssessment) -> Optional[str]:
    """Reason the patient needs immediate life-saving intervention, if any."""
    v = assessment.vitals
    if v is not None:
        if v.gcs_total is not None and v.gcs_total <= 8:
            return f"Unresponsive (GCS {v.gcs_total})"
        if v.heart_rate == 0:
            return "Pulseless (HR 0)"
        if v.respiratory_rate == 0:
            return "Apneic (RR 0)"
        if v.oxygen_saturation is not None and v.oxygen_saturation < 85:
            return f"Severe hypoxia (SpO2 {v.oxygen_saturation}%)"

    hit = first_hit(assessment.chief_complaint, IMMEDIATE_THREAT_RULES)
    if hit:
        return f"Immediate threat: {hit.keyword}"
    return None


def high_risk_reason(assessment: TriageAssessment) -> Optional[str]:
    """Reason the presentation is high risk (ESI 2), if any."""
    v = assessment.vitals
    if v is not None and v.gcs_total is not None and v.gcs_total < 15:
        return f"Altered mental status (GCS {v.gcs_total})"

    pain = assessment.pain_score
    if pain is not None and pain >= 8:
        return f"Severe pain ({pain}/10)"

    hit = first_hit(assessment.chief_complaint, HIGH_RISK_RULES)
    if hit:
        return f"High-risk complaint: {hit.keyword}"

    if (
        assessment.immunocompromised
        and v is not None
        and v.temperature is not None
        and v.temperature >= 38
    ):
        return f"Immunocompromised with fever ({v.temperature}°C)"
    return None


def estimate_resource_needs(chief_complaint: str) -> int:
    """Number of independent resource buckets the complaint implies (0-4)."""
    return len(match_rules(chief_complaint, RESOURCE_RULES))


def vital_sign_subscore(vitals: Optional[Vitals]) -> int:
    """Additive abnormality score; each vital contributes its worst bracket."""
    if vitals is None:
        return 0
    return sum(b.points(getattr(vitals, b.attribute)) for b in VITAL_BRACKETS)


def severe_vital_findings(vitals: Optional[Vitals]) -> List[str]:
    """Vitals that sit in their severe bracket, for abnormal_vital alerts."""
    if vitals is None:
        return []
    findings = []
    for b in VITAL_BRACKETS:
        value = getattr(vitals, b.attribute)
        if b.is_severe(value):
            findings.append(f"{b.name}={value}")
    return findings


# =============================================================================
# SCORING
# =============================================================================

def validate_assessment(assessment: TriageAssessment) -> None:
    """Raise ValidationError when an assessment cannot be scored."""
    if assessment.vitals is None:
        raise ValidationError(
            "Triage requires a vitals record",
            field="vitals",
            details={"visit_id": assessment.visit_id},
        )
    if not assessment.chief_complaint or not assessment.chief_complaint.strip():
        raise ValidationError(
            "Triage requires a chief complaint",
            field="chief_complaint",
            details={"visit_id": assessment.visit_id},
        )
    pain = assessment.pain_score
    if pain is not None and not 0 <= pain <= 10:
        raise ValidationError(
            f"Pain score must be between 0 and 10, got {pain}",
            field="pain_score",
        )
    for factor in assessment.acuity_factors:
        if factor.points < 0:
            raise ValidationError(
                f"Acuity factor '{factor.factor}' has negative points",
                field="acuity_factors",
            )


def score_triage(assessment: TriageAssessment) -> TriageResult:
    """
    Compute the triage level and score for an assessment.

    Args:
        assessment: The triage nurse's assessment, including vitals

    Returns:
        TriageResult with level in 1..5 and score in 0..100

    Raises:
        ValidationError: If the assessment is missing vitals or a complaint
    """
    validate_assessment(assessment)

    reason = immediate_intervention_reason(assessment)
    if reason:
        return TriageResult(
            level=AcuityLevel.CRITICAL,
            score=100,
            rationale=(reason,),
            short_circuit="immediate_intervention",
        )

    reason = high_risk_reason(assessment)
    if reason:
        return TriageResult(
            level=AcuityLevel.EMERGENT,
            score=80,
            rationale=(reason,),
            short_circuit="high_risk",
        )

    rationale: List[str] = []

    resource_count = estimate_resource_needs(assessment.chief_complaint)
    if resource_count >= 2:
        level, score = AcuityLevel.URGENT, 60
    elif resource_count == 1:
        level, score = AcuityLevel.LESS_URGENT, 40
    else:
        level, score = AcuityLevel.NON_URGENT, 20
    rationale.append(f"Expected resources: {resource_count}")

    vital_score = vital_sign_subscore(assessment.vitals)
    if vital_score > 0:
        level = max(AcuityLevel.CRITICAL, level - 1)
        score += vital_score
        rationale.append(f"Abnormal vitals (+{vital_score}), escalated to level {level}")

    for factor in assessment.acuity_factors:
        if factor.impact == FactorImpact.INCREASE:
            score += factor.points
            if factor.points >= 20 and level > AcuityLevel.EMERGENT:
                level -= 1
                rationale.append(f"Acuity factor '{factor.factor}' escalated to level {level}")
        elif factor.impact == FactorImpact.DECREASE:
            score -= factor.points

    return TriageResult(
        level=AcuityLevel.clamp(level),
        score=max(0, min(100, score)),
        rationale=tuple(rationale),
        resource_count=resource_count,
        vital_subscore=vital_score,
    )
