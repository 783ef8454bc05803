"""PetRadar: lost pet reports, street sightings and photo-based matching."""

__version__ = "1.0.0"
