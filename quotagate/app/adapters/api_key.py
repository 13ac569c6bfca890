"""Admission control per API credential."""

from .base import ScopeAdapter


class ApiKeyAdapter(ScopeAdapter):
    """Limits tracked independently for each API key."""

    scope_type = "apikey"
