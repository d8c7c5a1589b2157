"""
Entry point for running as a module.

Usage: python -m webpilot run "GOAL" --url URL
"""

import sys
from .cli import main

if __name__ == "__main__":
    sys.exit(main())
