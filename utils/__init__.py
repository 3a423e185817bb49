"""
utils/ - Shared helpers: logging setup and cooperative cancellation.
"""
