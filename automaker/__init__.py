"""Automaker -- autonomous feature execution core.

Drives an AI agent through Plan -> Act -> Verify for every feature in a
project backlog, isolating each feature's work in its own git worktree until
verification passes.
"""

__version__ = "0.1.0"
