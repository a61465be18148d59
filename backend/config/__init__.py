"""
Project configuration package
"""

from .loader import ConfigLoader, get_config

__all__ = ["ConfigLoader", "get_config"]
