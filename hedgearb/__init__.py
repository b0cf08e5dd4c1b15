"""
Two-venue hedged futures arbitrage engine.
"""

__version__ = "0.1.0"
