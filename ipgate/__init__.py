"""IPGate — IP allow-list gateway for login and administrative surfaces."""

__version__ = "1.0.0"
