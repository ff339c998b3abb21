"""Command line entry point for the GRU stock direction forecaster."""

from __future__ import annotations

from stock_gru.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
