"""tern -- terminal coding assistant: provider adapters, tool loop, plan mode."""

__version__ = "0.1.0"
