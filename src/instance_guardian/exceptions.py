"""Exceptions raised by Instance Guardian."""

from typing import Optional


class GuardianError(Exception):
    """Base class for all Instance Guardian errors."""


class ConfigurationError(GuardianError):
    """Environment configuration is missing or malformed."""


class ValidationError(GuardianError):
    """A request payload failed validation."""


class MissingCredentialsError(GuardianError):
    """The user has no stored AWS credentials."""

    def __init__(self, user_id: str):
        super().__init__("AWS credentials not found. Please update them in the dashboard.")
        self.user_id = user_id


class StopInstanceError(GuardianError):
    """Stopping an instance failed in every candidate region."""

    def __init__(self, instance_id: str, regions: list[str], last_error: Optional[Exception]):
        if last_error is not None:
            message = f"Failed to stop {instance_id} in {', '.join(regions)}: {last_error}"
        else:
            message = f"Instance {instance_id} not found in {', '.join(regions)}"
        super().__init__(message)
        self.instance_id = instance_id
        self.regions = regions
        self.last_error = last_error
