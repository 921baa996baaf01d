"""Sky Planner Auth - authentication and session security service."""

__version__ = "1.0.0"
