"""
Emergency Department Agents

Microservices supporting Emergency Department operations.

Agents:
-------
- patient_flow: Triage scoring, protocol alerts, bed allocation and the
  visit workflow from arrival to disposition (port 8006)
"""

__version__ = "1.0.0"
__author__ = "Hospital AI Platform Team"
