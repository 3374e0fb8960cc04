"""Formation workflow engine: guided, resumable business entity formation."""

__version__ = "1.0.0"
