"""Orchestrator for autonomous coding agents running in sandbox containers."""

__version__ = "0.1.0"
