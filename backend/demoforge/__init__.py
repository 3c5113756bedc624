"""Demoforge: lead-to-demo-site job orchestrator."""

__version__ = "1.0.0"
