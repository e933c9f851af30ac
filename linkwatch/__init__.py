"""Collects Twitter/X links posted in Discord channels."""

__version__ = "1.0.0"
