from rest_framework.permissions import IsAuthenticated, IsAdminUser
from rest_framework.throttling import UserRateThrottle
from rest_framework_simplejwt.authentication import JWTAuthentication


class PrivateUserViewMixin:
    """Candidate-facing views: a JWT bearer token is required."""
    authentication_classes = [JWTAuthentication]
    permission_classes = [IsAuthenticated]
    throttle_classes = [UserRateThrottle]


class AdminViewMixin:
    """Back-office views: staff users only, no ownership scoping."""
    authentication_classes = [JWTAuthentication]
    permission_classes = [IsAuthenticated, IsAdminUser]
    throttle_classes = [UserRateThrottle]


class PublicViewMixin:
    """
    Endpoints called by third parties (payment processors).
    They authenticate the payload themselves, so no session or token is checked.
    """
    authentication_classes = []
    permission_classes = []
    throttle_classes = []
