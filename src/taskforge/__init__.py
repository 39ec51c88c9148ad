"""taskforge: an asynchronous agent execution core."""

__version__ = "0.1.0"
