# genflow/__init__.py
"""Generation orchestrator: provider jobs, reconciliation and refinement."""

__version__ = "0.1.0"
