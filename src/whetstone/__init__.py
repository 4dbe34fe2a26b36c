"""Test-validated iterative refinement orchestrator."""

__version__ = "0.1.0"

__all__ = ["__version__"]
