"""Timeline, graph compilation, search and tool orchestration modules."""
