"""
hls-offline: download segmented HLS assets for offline playback.
"""

__version__ = "0.1.0"
