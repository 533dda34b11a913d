"""MusicBot Registry: advertise musicbot instances under your public IP."""

__version__ = "1.0.0"
