"""Background job worker for the LLM benchmark exchange."""

__version__ = "0.1.0"
