"""Entry point for ``python -m threadline``."""

from threadline.cli.commands import app

if __name__ == "__main__":
    app()
