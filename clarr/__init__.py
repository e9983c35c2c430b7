"""clarr: keeps the download directory and Radarr/Sonarr in sync with the library."""

__version__ = "1.0.0"
