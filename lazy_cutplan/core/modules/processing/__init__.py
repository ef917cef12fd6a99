"""Filter graph compilation and subtitle retiming."""
