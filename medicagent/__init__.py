"""MedicAgent: routed health-assistant agents with rule-driven collaboration."""

__version__ = "0.1.0"
