"""
meetcap - meeting audio capture.

Captures microphone and system audio, mixes them into one stream and
encodes it incrementally into a single recording.
"""

__version__ = "0.1.0"
