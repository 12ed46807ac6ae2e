"""Problem2Profit marketplace backend: deals, upvotes and payments."""

__version__ = "0.1.0"
