"""
Entry point for the messaging command line client.
"""
from .cli import app


def main():
    """Run the typer application."""
    app()


if __name__ == "__main__":
    main()
