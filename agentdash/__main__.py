"""Entry point for `python -m agentdash`."""

from .cli import main

if __name__ == "__main__":
    main()
