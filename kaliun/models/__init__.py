"""Kaliun Connect Database Models."""

from kaliun.models.user import LocalSession, User
from kaliun.models.installation import (
    HealthReport,
    Installation,
    InstallationLog,
    InstallationUser,
)
from kaliun.models.device_auth import DeviceAuthorization

__all__ = [
    "User",
    "LocalSession",
    "Installation",
    "InstallationUser",
    "HealthReport",
    "InstallationLog",
    "DeviceAuthorization",
]
