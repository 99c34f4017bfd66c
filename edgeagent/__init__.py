"""Edge device agent parts: metrics scraping and storage, remote write, mounts and OS upgrades."""

__version__ = "0.2.0"