"""
API v1 modules
"""

from . import admin

__all__ = ["admin"]
