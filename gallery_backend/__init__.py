"""Gallery download quota and entitlement backend."""

__version__ = "0.1.0"
