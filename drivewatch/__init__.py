"""DriveWatch: real-time driving telemetry simulation and hazard alerts."""

from drivewatch.config import VERSION as __version__

__all__ = ["__version__"]
