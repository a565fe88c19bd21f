"""Channel synchronization engine: channel APIs, iCal feeds and webhooks."""

__version__ = "1.0.0"
