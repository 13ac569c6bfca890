"""Scope adapters binding the limiter and tracker to API keys, groups and users."""

from .api_key import ApiKeyAdapter
from .base import (
    AdmissionDecision,
    ScopeAdapter,
    ScopeConfigProvider,
    ScopeLimits,
    StaticConfigProvider,
    UsageAmounts,
    UsageCommit,
    UsageEstimate,
)
from .group import GroupAdapter
from .user import UserAdapter

__all__ = [
    "AdmissionDecision",
    "ApiKeyAdapter",
    "GroupAdapter",
    "ScopeAdapter",
    "ScopeConfigProvider",
    "ScopeLimits",
    "StaticConfigProvider",
    "UsageAmounts",
    "UsageCommit",
    "UsageEstimate",
    "UserAdapter",
]
