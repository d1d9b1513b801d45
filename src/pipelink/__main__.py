"""CLI entry point: python -m pipelink."""

from pipelink.cli import main

if __name__ == "__main__":
    main()
