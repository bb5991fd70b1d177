"""
NaaP Runtime
============

Plugin lifecycle management and Service Gateway runtime.
"""

__version__ = "0.1.0"
