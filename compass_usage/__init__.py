"""
Compass Card usage retrieval.

Scrapes card usage history from the Compass Card account portal and caches
completed months on disk.
"""

__version__ = "0.1.0"
