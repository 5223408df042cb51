"""
Chronicle uplink - local sensor buffering and reliable upload.
"""
__version__ = "1.0.0"
