"""
Storage layer: the event log and the state files derived from it.
"""
