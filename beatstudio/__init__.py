"""Generation orchestrator for ledger-paid music generation."""

__version__ = "1.0.0"
