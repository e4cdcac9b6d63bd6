"""Supervisor loop that drives a stateless coding agent through a task list."""

__version__ = "0.1.0"
