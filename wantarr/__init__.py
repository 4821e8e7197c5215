"""Household media-request bot: Trakt wants reconciled against a Jellyfin library."""

__version__ = "1.0.0"
