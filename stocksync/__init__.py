"""stocksync — keeps a local inventory store in step with Finale Inventory."""

__version__ = "1.0.0"
