"""Local container sandboxes for a browser-automation agent."""

__version__ = "0.1.0"
