"""duplex CLI bootstrap."""

from __future__ import annotations

from duplex.cli import app

if __name__ == "__main__":
    app()
