"""Switchyard: task dispatch and dependency-priority engine."""

__version__ = "0.1.0"
