"""External tools, caching and process control."""
