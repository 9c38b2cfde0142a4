"""
Entry point for running Waypost as a module.

Usage:
    python -m waypost [command] [options]
"""

from waypost.cli import main

if __name__ == "__main__":
    main()
