"""Penny - proactive savings coach: intervention gate, marathon planner and evaluation engine"""

__version__ = "0.1.0"
