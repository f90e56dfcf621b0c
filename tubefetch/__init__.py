"""
tubefetch: a session-oriented media extraction server built around yt-dlp.
"""

__version__ = "0.3.0"
