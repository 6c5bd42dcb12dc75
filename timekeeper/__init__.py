"""
Timekeeper - time-driven lifecycle and notification engine.

Polls the authoritative store for meetings, events and breaks that crossed a
time boundary, flips their status, emits at-most-once notifications and
invalidates the shared cache so live clients see the new state.
"""

__version__ = "1.0.0"
