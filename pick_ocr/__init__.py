"""
Pick reader: reads P2..P5 pick numbers from results screenshots.
"""

__version__ = "0.3.0"
