"""
mailhub - multi-account email search with urgency/importance classification.
"""

__version__ = "1.0.0"
