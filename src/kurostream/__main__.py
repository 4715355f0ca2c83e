"""kurostream CLI entry point."""

from kurostream.cli.app import app

if __name__ == "__main__":
    app()
