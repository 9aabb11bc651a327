"""
whispercli - speech to text from media files or a live microphone.
"""

__version__ = "0.1.0"
