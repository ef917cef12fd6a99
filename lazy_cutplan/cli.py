"""CLI entry points for lazy-cutplan package."""

import sys


def main():
    """Entry point for lazy-cutplan command."""
    from lazy_cutplan.core.main import main as run
    sys.exit(run())


if __name__ == "__main__":
    main()
