"""
homestack: configuration snapshots and health aggregation for a home media stack.
"""
__version__ = "1.0.0"
