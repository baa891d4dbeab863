"""Certification engine: policies, case orchestration, and the execution loop."""
