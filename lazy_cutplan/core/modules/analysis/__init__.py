"""Timeline and media analysis."""
