"""Dispatch prompts to external AI CLI tools with persisted job state."""

__version__ = "0.1.0"
