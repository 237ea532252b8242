"""
MedSync - device-to-device medication list transfer

A sender publishes a WebRTC offer under a short pairing code on a relay; the
receiver enters the code, answers, and the list travels over a direct data
channel. The receiver then merges or replaces its local list.
"""

__version__ = "1.0.0"
