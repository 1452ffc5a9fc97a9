"""Version information for the edge NVR service."""

APP_VERSION = "0.4.0"

__all__ = ["APP_VERSION"]
