"""Stack-set deployment orchestrator with rolling capacity updates."""

__version__ = "0.1.0"
