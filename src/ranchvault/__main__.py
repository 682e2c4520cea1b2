"""
Entry point for running ranchvault as a module.

Usage:
    python -m ranchvault [command] [options]
"""

from ranchvault.cli import main

if __name__ == "__main__":
    main()
