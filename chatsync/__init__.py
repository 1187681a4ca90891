"""Real-time chat state synchronization service."""

__version__ = "1.0.0"
