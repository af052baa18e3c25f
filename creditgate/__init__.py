"""
Credit gateway core - credential refresh and credit metering.
"""

__version__ = "0.1.0"
