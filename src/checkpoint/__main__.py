"""
Entry point for running Checkpoint as a module.

Usage:
    python -m checkpoint [command] [options]

This allows Checkpoint to be executed directly as a Python module
without installing the console script.
"""

from checkpoint.cli import main

if __name__ == "__main__":
    main()
