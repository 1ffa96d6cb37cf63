from fastapi import status


class PointsError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ValidationError(PointsError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(PointsError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AuthError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(PointsError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(PointsError):
    status_code = status.HTTP_409_CONFLICT


class RateLimitError(PointsError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class UpstreamError(PointsError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
