"""Core planning modules."""
