"""
devtrack - Developer Activity Tracker

Ingests git history, indexes the working tree, and serves worklogs and
semantic search from a local per-profile store.
"""

__version__ = "0.1.0"
__author__ = "devtrack Team"

__all__ = ["__version__"]
