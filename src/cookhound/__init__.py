"""
Server-side session and background-job infrastructure for the cookhound recipe app.
"""

__version__ = "0.4.0"
