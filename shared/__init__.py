"""
Winfloor Shared Module
======================

Common configuration, logging, and console utilities used by the
``winfloor`` analyzer package.
"""

from shared.config import FloorConfig

__all__ = ["FloorConfig"]
