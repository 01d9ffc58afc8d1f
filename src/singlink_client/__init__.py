"""Connection orchestrator for the sing-box engine."""

__version__ = "0.1.0"
