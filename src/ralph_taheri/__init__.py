"""ralph-taheri: an issue-driven agent loop over GitHub Issues or Linear."""

__version__ = "0.3.0"

__all__ = ["__version__"]
