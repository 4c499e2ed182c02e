"""Sandboxed multi-language code execution and interactive terminal service."""

__version__ = "1.0.0"
