"""
Core engine, configuration and service adapters
"""
from .config import Config

__all__ = ["Config"]
