"""
slotsync - shared availability ledger and rehearsal slot synchronizer.
"""

__version__ = "0.1.0"
