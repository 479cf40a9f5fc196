"""Crash-resumable social-graph corpus builder."""

__version__ = "0.1.0"
