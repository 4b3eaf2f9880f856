"""reqcov - requirement coverage reconciliation engine.

Reconciles the requirements a test case formally links against the
requirement codes its steps mention, and builds per-requirement coverage
rows from the latest run of every test case in a test plan.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
