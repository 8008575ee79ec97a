"""voicerelay CLI entry point."""

from voicerelay.cli import app

if __name__ == "__main__":
    app()
