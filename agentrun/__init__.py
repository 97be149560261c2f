"""Agent run orchestration and tool-approval service."""

__version__ = "0.1.0"
