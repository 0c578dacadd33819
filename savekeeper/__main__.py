"""Entry point for Save Keeper.

Usage:
    python -m savekeeper COMMAND [ARGS]

Run without a command to list the available commands.
"""

import sys


def main() -> None:
    """Delegate to the command-line dispatcher."""
    from savekeeper.service import main as service_main

    sys.exit(service_main())


if __name__ == "__main__":
    main()
