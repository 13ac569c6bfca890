"""Admission control per user."""

from .base import ScopeAdapter


class UserAdapter(ScopeAdapter):
    """Limits tracked independently for each user across all of their keys."""

    scope_type = "user"
