"""Entry point for ``python -m labpipe``."""

from labpipe.cli.app import app


def main() -> None:
    """Run the labpipe CLI."""
    app()


if __name__ == "__main__":
    main()
