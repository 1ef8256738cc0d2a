#!/usr/bin/env python3
"""Main entry point for the plan runner CLI."""
from planrunner.cli import run

if __name__ == "__main__":
    run()
