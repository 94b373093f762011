"""
ED Patient-Flow Agent - Protocol Detector

Runs alongside triage scoring on the same assessment and flags the
time-critical clinical protocols:

┌──────────┬────────────────────────────────────┬──────────┬──────────────────┐
│ PROTOCOL │ TRIGGER                            │ SEVERITY │ VISIT FLAG       │
├──────────┼────────────────────────────────────┼──────────┼──────────────────┤
│ Stroke   │ stroke / weakness / speech /       │ critical │ is_stroke        │
│          │ facial droop                       │          │                  │
│ STEMI    │ chest pain / cardiac               │ warning  │ (none: confirmed │
│          │                                    │          │  later by ECG)   │
│ Sepsis   │ (SIRS >= 2 or qSOFA >= 2) and a    │ critical │ is_sepsis        │
│          │ suspected-infection complaint      │          │                  │
│ Behavior │ suicidal / homicidal / psychosis   │ (none)   │ is_psychiatric   │
└──────────┴────────────────────────────────────┴──────────┴──────────────────┘

Detectors are independent boolean rules. Nothing here touches the visit: the
engine applies the returned findings inside its own transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from .alerts import new_alert
from .config import Settings, settings as default_settings
from .lexicon import INFECTION_RULES, PSYCHIATRIC_RULES, STEMI_RULES, STROKE_RULES, first_hit
from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    QsofaCriteria,
    SepsisBundleItem,
    SepsisScreening,
    SirsCriteria,
    TraumaLevel,
    TriageAssessment,
    Vitals,
)

logger = logging.getLogger(__name__)


# =============================================================================
# SEPSIS SCREENING
# =============================================================================

def sirs_criteria(vitals: Optional[Vitals], wbc_abnormal: Optional[bool] = None) -> SirsCriteria:
    """SIRS criteria; WBC defaults to false when no lab result exists yet."""
    if vitals is None:
        return SirsCriteria(wbc=bool(wbc_abnormal))
    t, hr, rr = vitals.temperature, vitals.heart_rate, vitals.respiratory_rate
    return SirsCriteria(
        temperature=t is not None and (t > 38 or t < 36),
        heart_rate=hr is not None and hr > 90,
        respiratory_rate=rr is not None and rr > 20,
        wbc=bool(wbc_abnormal),
    )


def qsofa_criteria(vitals: Optional[Vitals]) -> QsofaCriteria:
    if vitals is None:
        return QsofaCriteria()
    rr, sbp, gcs = vitals.respiratory_rate, vitals.systolic_bp, vitals.gcs_total
    return QsofaCriteria(
        respiratory_rate=rr is not None and rr >= 22,
        altered_mentation=gcs is not None and gcs < 15,
        systolic_bp=sbp is not None and sbp <= 100,
    )


def build_sepsis_bundle(screened_at: datetime, config: Settings = default_settings) -> List[SepsisBundleItem]:
    """Hour-1 / hour-3 bundle, due times relative to the screening time."""
    due = lambda minutes: screened_at + timedelta(minutes=minutes)  # noqa: E731
    return [
        SepsisBundleItem(item="Lactate level", due_time=due(config.sepsis_lactate_due_minutes)),
        SepsisBundleItem(
            item="Blood cultures before antibiotics",
            due_time=due(config.sepsis_cultures_due_minutes),
        ),
        SepsisBundleItem(item="Broad-spectrum antibiotics", due_time=due(config.sepsis_antibiotics_due_minutes)),
        SepsisBundleItem(item="IV fluid resuscitation (30 mL/kg)", due_time=due(config.sepsis_fluids_due_minutes)),
    ]


def screen_for_sepsis(
    assessment: TriageAssessment,
    patient_id: str,
    screened_at: datetime,
    config: Settings = default_settings,
) -> SepsisScreening:
    """
    Screen an assessment for likely sepsis.

    sepsis_likely = (SIRS >= 2 or qSOFA >= 2) and suspected infection.
    A likely screen carries four pending bundle items.
    """
    vitals = assessment.vitals
    sirs = sirs_criteria(vitals, assessment.wbc_abnormal)
    qsofa = qsofa_criteria(vitals)
    infection = first_hit(assessment.chief_complaint, INFECTION_RULES)
    suspected_infection = infection is not None

    sepsis_likely = (sirs.count >= 2 or qsofa.score >= 2) and suspected_infection
    septic_shock = (
        sepsis_likely
        and vitals is not None
        and vitals.systolic_bp is not None
        and vitals.systolic_bp < 90
    )

    screening = SepsisScreening(
        visit_id=assessment.visit_id,
        patient_id=patient_id,
        screened_by=assessment.assessed_by,
        screened_at=screened_at,
        sirs_criteria=sirs,
        qsofa_criteria=qsofa,
        suspected_infection=suspected_infection,
        sepsis_likely=sepsis_likely,
        septic_shock=septic_shock,
        infection_source=infection.keyword if infection else None,
    )
    if sepsis_likely:
        screening.bundle_items = build_sepsis_bundle(screened_at, config)
        logger.warning(
            "SEPSIS SCREEN POSITIVE",
            extra={
                "visit_id": assessment.visit_id,
                "sirs_count": sirs.count,
                "qsofa_score": qsofa.score,
                "infection_source": screening.infection_source,
            },
        )
    return screening


def sepsis_alert(at: datetime) -> Alert:
    return new_alert(
        AlertType.SEPSIS_ALERT,
        AlertSeverity.CRITICAL,
        "SEPSIS ALERT: Initiate sepsis bundle",
        at,
    )


# =============================================================================
# COMBINED DETECTION
# =============================================================================

@dataclass
class ProtocolFindings:
    """What the detector found for one assessment."""
    alerts: List[Alert] = field(default_factory=list)
    is_stroke: bool = False
    stemi_suspected: bool = False
    is_sepsis: bool = False
    is_psychiatric: bool = False
    sepsis_screening: Optional[SepsisScreening] = None

    @property
    def protocols(self) -> List[str]:
        names = []
        if self.is_stroke:
            names.append("stroke")
        if self.stemi_suspected:
            names.append("stemi")
        if self.is_sepsis:
            names.append("sepsis")
        if self.is_psychiatric:
            names.append("behavioral")
        return names


def detect_protocols(
    assessment: TriageAssessment,
    patient_id: str,
    now: datetime,
    config: Settings = default_settings,
) -> ProtocolFindings:
    """Run every protocol detector against an assessment."""
    findings = ProtocolFindings()
    complaint = assessment.chief_complaint

    if first_hit(complaint, STROKE_RULES):
        findings.is_stroke = True
        findings.alerts.append(new_alert(
            AlertType.STROKE_ALERT,
            AlertSeverity.CRITICAL,
            "STROKE ALERT: Activate stroke protocol",
            now,
        ))

    if first_hit(complaint, STEMI_RULES):
        findings.stemi_suspected = True
        findings.alerts.append(new_alert(
            AlertType.STEMI_ALERT,
            AlertSeverity.WARNING,
            f"Chest pain: Obtain ECG within {config.stemi_ecg_target_minutes} minutes",
            now,
        ))

    screening = screen_for_sepsis(assessment, patient_id, now, config)
    findings.sepsis_screening = screening
    if screening.sepsis_likely:
        findings.is_sepsis = True
        findings.alerts.append(sepsis_alert(now))

    if first_hit(complaint, PSYCHIATRIC_RULES):
        findings.is_psychiatric = True

    if findings.alerts:
        logger.warning(
            "Protocol alerts raised at triage",
            extra={"visit_id": assessment.visit_id, "protocols": findings.protocols},
        )
    return findings


# =============================================================================
# TEAM COMPOSITION
# =============================================================================

TRAUMA_BASE_ROLES = ["trauma_surgeon", "emergency_physician", "trauma_nurse", "respiratory_therapist"]

STROKE_TEAM_ROLES = ["stroke_neurologist", "emergency_physician", "stroke_nurse", "ct_technologist"]


def trauma_team_roles(level: TraumaLevel) -> List[str]:
    """Roles paged for a trauma activation of the given level."""
    if level == TraumaLevel.ALPHA:
        return TRAUMA_BASE_ROLES + ["anesthesiologist", "neurosurgeon", "orthopedic_surgeon", "radiologist"]
    if level == TraumaLevel.BRAVO:
        return TRAUMA_BASE_ROLES + ["anesthesiologist"]
    return ["emergency_physician", "trauma_nurse"]


def trauma_triage_level(level: TraumaLevel) -> int:
    return 1 if level == TraumaLevel.ALPHA else 2
