"""GameGate: gaming-aware request admission and rate control."""

__version__ = "0.1.0"
