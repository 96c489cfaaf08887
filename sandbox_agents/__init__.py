"""Sandbox Agents: run AI coding agents in remote sandboxes."""

__version__ = "0.1.0"
