#!/usr/bin/env python3
"""
devserver-manager - Main entry point for python -m devserver_manager
"""

import sys


def main():
    """Main entry point for python -m devserver_manager"""
    try:
        from devserver_manager.cli import main as cli_main
        sys.exit(cli_main())
    except KeyboardInterrupt:
        print("\ndevserver-manager interrupted by user", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
