"""
PetRadar error taxonomy
-----------------------
Every error raised by the core carries the HTTP status the API layer maps it to.
"""


class PetRadarError(Exception):
    """Base exception for PetRadar operations"""
    status_code = 500


class ValidationError(PetRadarError):
    """Malformed or missing input"""
    status_code = 400


class AuthorizationError(PetRadarError):
    """Caller is not the owner of the resource"""
    status_code = 403


class NotFoundError(PetRadarError):
    """Referenced entity does not exist"""
    status_code = 404


class ConflictError(PetRadarError):
    """Uniqueness violation"""
    status_code = 409


class ExternalServiceError(PetRadarError):
    """Object store, similarity search or push gateway failure"""
    status_code = 502
