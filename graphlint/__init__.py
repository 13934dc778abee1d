"""graphlint: dependency-ordered, cached and resumable LLM review of call graphs."""

__version__ = "0.1.0"
