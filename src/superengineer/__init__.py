"""Superengineer: supervisor and stream interpreter for coding-agent CLIs."""

__version__ = "0.4.0"
