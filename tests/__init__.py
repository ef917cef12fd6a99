"""
Test package for lazy_cutplan.

External tools are never launched: subprocess is patched and the quality
search is driven by synthetic evaluators.
"""

# Test configuration
TEST_CONFIG = {
    'timeout': 30,  # Default timeout for tests
    'temp_cleanup': True,  # Whether to clean up temp files
    'mock_subprocess': True,  # Whether to mock subprocess calls by default
}

__version__ = "1.0.0"
