"""safepoint - snapshots before risky automated changes, and the way back.

Takes named checkpoints of a git working tree, answers whether a recent
one exists, restores to one on demand and prunes old ones, recording
every step in an append-only audit log.
"""

__version__ = "1.0.0"
