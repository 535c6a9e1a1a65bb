"""
Entry point for running ruleforge as a module.

Usage:
    python -m ruleforge cycle               # Run every stage once
    python -m ruleforge schedule            # Run the periodic scheduler
    python -m ruleforge stats               # Show engine statistics

This is equivalent to:
    python -m ruleforge.cli.engine_cli [args]
"""

import sys


def main():
    """Main entry point."""
    from ruleforge.cli.engine_cli import main as engine_main
    return engine_main()


if __name__ == "__main__":
    sys.exit(main())
