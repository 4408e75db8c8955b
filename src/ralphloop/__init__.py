"""Ralph loop - supervised, repeated agent invocations driven by a task list."""

__version__ = "0.1.0"
