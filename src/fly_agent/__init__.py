"""Supervisor for remotely-driven coding agent runs."""

__version__ = "0.1.0"
