"""
Command-Line Interface

Console front end driving the communication service.
"""

from .node_cli import PeerlinkCLI, main

__all__ = ["PeerlinkCLI", "main"]
