"""Kindness pool: daily contributions shared equally between receivers."""

__version__ = "0.1.0"
