"""News portal API key rotation and real-time notification service."""

__version__ = "1.0.0"
