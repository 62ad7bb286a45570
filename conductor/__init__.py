"""Conductor - multi-terminal orchestrator for CLI coding assistants.

Supervises N terminal sessions and decides what to type into each one next,
using fast heuristics first and a remote decision model when needed.
"""

__version__ = "0.1.0"
