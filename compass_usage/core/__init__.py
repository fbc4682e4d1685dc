"""
Core modules for Compass Usage.

This package contains the portal session, form-state extraction,
usage CSV decoding and the usage service built on top of them.
"""
