"""
Hybrid Sync: bidirectional sync between RealGreen and GoHighLevel.
"""

__version__ = "0.1.0"
