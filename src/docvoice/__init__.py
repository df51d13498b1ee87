"""
DocVoice

Document-grounded realtime voice sessions over WebRTC.
"""

__version__ = "0.1.0"
