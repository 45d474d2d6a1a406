"""
Payment stream indexer: mirrors on-chain payroll streams into a SQL store.
"""

__version__ = "1.0.0"
