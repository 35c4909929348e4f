"""License and bearer-token authorization service for Google Play in-app purchases."""

__version__ = "0.1.0"
