"""Shared utilities for lazy_cutplan."""
