"""
Communication sessions: storage, state machine, initiation, termination and
the read API.
"""
