"""Autonomous bounty-answering agent and its tool gateway."""

__version__ = "0.1.0"
