"""
ED Patient-Flow Agent

A microservice that tracks every Emergency Department visit from arrival to
disposition.

This agent provides:
- Rule-based ESI triage scoring (levels 1-5, score 0-100)
- Stroke, STEMI and sepsis detection, trauma and stroke team activation
- Zone recommendation and bed allocation
- Critical lab value alerts and sepsis bundle deadline tracking
- Live department metrics and a tracking board
- REST API over all of the above

Components:
-----------
- config: Environment-based configuration and acuity constants
- models: Visit and its owned records
- lexicon: Declarative complaint keyword tables
- triage: Pure triage scoring
- protocols: Protocol detection and sepsis screening
- critical_results: Critical lab value table
- alerts: Alert lifecycle, SLA and bundle tracking
- allocation: Zone recommendation and bed claiming
- workflow: Visit state machine
- repository: Visit and activation storage with per-record locking
- collaborators: Registry, beds, staff, order routing and paging adapters
- metrics: Department metrics and tracking board
- engine: EmergencyDepartmentEngine, the single entry point
- api: FastAPI application

Usage:
------
    python -m uvicorn ed_agents.patient_flow.api:app --host 0.0.0.0 --port 8006

Author: Hospital AI Platform Team
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Hospital AI Platform Team"

from .config import settings
from .engine import EmergencyDepartmentEngine, EngineResult
from .triage import score_triage

__all__ = [
    "settings",
    "EmergencyDepartmentEngine",
    "EngineResult",
    "score_triage",
    "__version__",
]
