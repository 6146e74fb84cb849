"""Taskrail: dependency-gated pipeline runs."""

__version__ = "0.4.0"
