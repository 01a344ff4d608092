"""
Container Herald

Mirrors Docker containers into Discord channels: one channel per
container, one status message per channel, kept up to date with the
container's status and latest log tail.
"""

__version__ = "0.1.0"
