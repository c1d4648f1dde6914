"""Resumable batch generation of AI image variations."""

__version__ = "0.1.0"
