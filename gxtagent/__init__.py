"""
GXT Agent - An automated signal-driven trading agent.

This package computes indicator signals from stored bars, gates and sizes
entries, executes through a broker, and keeps an auditable record of every
decision, trade and account snapshot.
"""

__version__ = "0.1.0"
