"""
CI Common module.

This module contains shared domain models, the config normalizer and the
collaborator interfaces used across the CI system components (persistence,
controller, admin CLI).

The common module has no dependencies on other ci_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .config import ConfigNormalizer, EnvMode
from .errors import (
    AllocationConflict,
    CIError,
    DecryptionFailure,
    InvariantViolation,
    LegacyFormatWarning,
    NotFound,
    NotificationWarning,
)
from .models import Build, BuildRequest, Job, LifecycleEvent, Repository
from .ports import FeatureFlags, NotificationPort, SecretVault, StaticFeatureFlags
from .repository import BuildRepository

__all__ = [
    "AllocationConflict",
    "Build",
    "BuildRepository",
    "BuildRequest",
    "CIError",
    "ConfigNormalizer",
    "DecryptionFailure",
    "EnvMode",
    "FeatureFlags",
    "InvariantViolation",
    "Job",
    "LegacyFormatWarning",
    "LifecycleEvent",
    "NotFound",
    "NotificationPort",
    "NotificationWarning",
    "Repository",
    "SecretVault",
    "StaticFeatureFlags",
]
