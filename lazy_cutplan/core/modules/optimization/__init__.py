"""Sample placement and quality search."""
