"""
fusionshare - pair two endpoints through a room code, then move a file over
a direct WebRTC data channel with stop-and-wait delivery and resume.
"""

__version__ = "1.0.0"
