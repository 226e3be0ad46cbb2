"""
AyurTrace - Ayurvedic herb supply chain traceability
"""

__version__ = '1.0.0'
