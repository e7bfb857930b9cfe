"""
Communication session lifecycle engine.

Places outbound calls and text messages through external providers and
reconciles their webhook status events into one local record per session.
"""

__version__ = "0.1.0"
