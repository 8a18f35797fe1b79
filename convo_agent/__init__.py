"""Context and session orchestration engine for real-time conversational agents."""

__version__ = "0.1.0"
