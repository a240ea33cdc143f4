"""
CrisisGate - Emergency SOS Dispatch Core

Coordinates SOS requests between reporters, dispatchers and field responder
teams: the request lifecycle, proximity matching of responders and shelters,
and live event fan-out to connected clients.
"""

__version__ = "1.0.0"
__author__ = "CrisisGate Development Team"
