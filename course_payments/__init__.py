"""PayMob payment initiation and webhook reconciliation for course purchases."""

__version__ = "0.1.0"
