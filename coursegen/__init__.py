"""Course-generation job orchestrator service."""

__version__ = "1.0.0"
