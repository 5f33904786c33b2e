"""
Cardsmith - Character Card Conversion Toolkit

Imports, stores and re-exports character cards across JSON, PNG,
CHARX and Voxta package containers, resolving embedded assets on the way.
"""

__version__ = "0.1.0"
