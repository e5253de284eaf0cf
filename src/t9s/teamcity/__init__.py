"""TeamCity remote API collaborator."""

from .client import (
    TeamCityClient,
    build_duration,
    format_duration,
    format_started,
    parse_teamcity_datetime,
)

__all__ = [
    "TeamCityClient",
    "build_duration",
    "format_duration",
    "format_started",
    "parse_teamcity_datetime",
]
