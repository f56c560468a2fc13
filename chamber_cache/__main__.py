"""
Entry point for running the cache CLI as a module.

Usage: python -m chamber_cache
"""
from .cli import main

if __name__ == "__main__":
    main()
