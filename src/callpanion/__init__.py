"""CallPanion pairing and call-session orchestration."""

__version__ = "0.1.0"
