"""
video-engagement-counters source package

Like/view counters served from Redis and reconciled into the relational
store of the video site.
"""

__version__ = "1.0.0"
