"""
ED Patient-Flow Agent - Configuration Module

This module centralizes all environment-based configuration for the patient
flow microservice. It follows the 12-factor app methodology by externalizing
configuration through environment variables.

================================================================================
PATIENT FLOW OVERVIEW
================================================================================

Every Emergency Department visit moves through the same pipeline:

    Registration ──► Triage ──► Bed / Zone ──► Treatment ──► Disposition
         │              │                          │              │
         │              ├─ Stroke / STEMI alerts   ├─ Orders      ├─ Discharge
         │              └─ Sepsis bundle           └─ Results     ├─ Admission
         └─ Trauma activation                                     └─ Transfer

Time-critical protocols (stroke, trauma, STEMI, sepsis) carry hard clinical
deadlines. The deadlines below are the defaults used by the engine; each can
be tuned per hospital through environment variables.

    Sepsis bundle (Surviving Sepsis Campaign hour-1 / hour-3 bundle)
    ──────────────────────────────────────────────────────────────────
    Lactate level ............................. 60 minutes
    Blood cultures before antibiotics ......... 60 minutes
    Broad-spectrum antibiotics ................ 60 minutes
    IV fluid resuscitation (30 mL/kg) ......... 180 minutes

    STEMI
    ─────
    12-lead ECG ............................... 10 minutes

================================================================================
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List
from functools import lru_cache


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic Settings automatically reads from environment variables,
    with support for .env files and type validation.
    """

    # ==========================================================================
    # SERVICE IDENTIFICATION
    # ==========================================================================
    service_name: str = Field(
        default="ed-patient-flow-agent",
        description="Unique identifier for this microservice"
    )
    service_version: str = Field(
        default="1.0.0",
        description="Semantic version of this agent"
    )
    environment: str = Field(
        default="development",
        description="Runtime environment (development, staging, production)"
    )

    # ==========================================================================
    # PATIENT POPULATION FLAGS
    # ==========================================================================
    pediatric_age_limit: int = Field(
        default=18,
        ge=1,
        le=21,
        description="Patients younger than this are flagged pediatric"
    )
    geriatric_age_threshold: int = Field(
        default=65,
        ge=50,
        le=90,
        description="Patients at or above this age are flagged geriatric"
    )

    # ==========================================================================
    # PROTOCOL DEADLINES
    # ==========================================================================
    sepsis_lactate_due_minutes: int = Field(
        default=60,
        ge=1,
        le=360,
        description="Minutes after screening by which lactate must be drawn"
    )
    sepsis_cultures_due_minutes: int = Field(
        default=60,
        ge=1,
        le=360,
        description="Minutes after screening by which blood cultures are due"
    )
    sepsis_antibiotics_due_minutes: int = Field(
        default=60,
        ge=1,
        le=360,
        description="Minutes after screening by which antibiotics are due"
    )
    sepsis_fluids_due_minutes: int = Field(
        default=180,
        ge=1,
        le=720,
        description="Minutes after screening by which 30 mL/kg fluids are due"
    )
    stemi_ecg_target_minutes: int = Field(
        default=10,
        ge=1,
        le=60,
        description="Door-to-ECG target for chest pain presentations"
    )

    # ==========================================================================
    # ALERT SLA CONFIGURATION
    # ==========================================================================
    alert_ack_sla_critical_minutes: int = Field(
        default=5,
        ge=1,
        le=120,
        description="Minutes a critical alert may stay unacknowledged"
    )
    alert_ack_sla_warning_minutes: int = Field(
        default=15,
        ge=1,
        le=240,
        description="Minutes a warning alert may stay unacknowledged"
    )
    alert_ack_sla_info_minutes: int = Field(
        default=60,
        ge=1,
        le=1440,
        description="Minutes an informational alert may stay unacknowledged"
    )

    # ==========================================================================
    # BED INVENTORY
    # ==========================================================================
    trauma_bays: List[str] = Field(
        default=["TB1", "TB2"],
        description="Trauma bay identifiers available to trauma activations"
    )

    # ==========================================================================
    # NOTIFICATION / ORCHESTRATOR
    # ==========================================================================
    orchestrator_url: str = Field(
        default="http://orchestrator:3000",
        description="URL of the central orchestrator service (paging relay)"
    )
    orchestrator_paging_enabled: bool = Field(
        default=False,
        description="Route team pages through the orchestrator instead of logging them"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        ge=0.1,
        le=60.0,
        description="Upper bound on a single page delivery before it is reported as failed"
    )

    # ==========================================================================
    # API CONFIGURATION
    # ==========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8006,
        description="API server port"
    )
    api_workers: int = Field(
        default=1,
        description="Number of Uvicorn workers"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # ==========================================================================
    # LOGGING CONFIGURATION
    # ==========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached Settings instance.

    Using lru_cache ensures we only parse environment variables once,
    improving performance and consistency across the application.
    """
    return Settings()


# ==========================================================================
# CONVENIENCE EXPORTS
# ==========================================================================
settings = get_settings()


# ==========================================================================
# ACUITY LEVEL CONSTANTS
# ==========================================================================
class AcuityLevel:
    """
    Emergency Severity Index (ESI / CIMU) constants.

    Level 1 is the most acute; level 5 could be seen in a clinic.
    """
    CRITICAL = 1        # Resuscitation - immediate life-saving intervention
    EMERGENT = 2        # Emergent - high risk, don't delay
    URGENT = 3          # Urgent - stable but needs multiple resources
    LESS_URGENT = 4     # Less Urgent - stable, single resource
    NON_URGENT = 5      # Non-Urgent - could be seen in clinic

    ALL = (1, 2, 3, 4, 5)

    # Human-readable labels
    LABELS = {
        1: "Critical (Resuscitation)",
        2: "Emergent (High Risk)",
        3: "Urgent (Moderate)",
        4: "Less Urgent (Low Acuity)",
        5: "Non-Urgent (Minor)",
    }

    # Target time-to-physician in minutes
    TARGET_TIMES = {
        1: 0,
        2: 10,
        3: 30,
        4: 60,
        5: 120,
    }

    @classmethod
    def get_label(cls, level: int) -> str:
        """Get human-readable label for acuity level."""
        return cls.LABELS.get(level, f"Unknown ({level})")

    @classmethod
    def get_target_time(cls, level: int) -> int:
        """Get target response time in minutes for acuity level."""
        return cls.TARGET_TIMES.get(level, 120)

    @classmethod
    def clamp(cls, level: int) -> int:
        """Keep a level inside the 1..5 scale."""
        return max(cls.CRITICAL, min(cls.NON_URGENT, level))
