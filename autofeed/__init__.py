"""Autofeed - surface interesting chat conversations on the global feed"""

from __future__ import annotations

__version__ = "0.1.0"
