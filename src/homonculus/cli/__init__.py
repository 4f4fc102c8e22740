#!/usr/bin/env python3
"""
Homonculus CLI package.
"""

from .parsers import main
from .utils import build_orchestrator, console

__all__ = ["main", "build_orchestrator", "console"]
