"""
Review Responder - reply to App Store and Google Play reviews from the terminal.
"""

__version__ = "0.1.0"
