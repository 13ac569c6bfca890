"""Store key format.

Keys are shared by every process instance and must stay byte-compatible:

    <namespace>:<scopeType>:<window|daily|monthly>:<identifier>:<periodKey>
"""

WINDOW = "window"
SLIDING_PERIOD_KEY = "sliding"

_KINDS = ("window", "daily", "monthly")


def build_key(
    namespace: str, scope_type: str, kind: str, identifier: str, period_key: str
) -> str:
    """Build a store key.

    Examples:
        >>> build_key("tokens", "apikey", "daily", "key-1", "2026-10-17")
        'tokens:apikey:daily:key-1:2026-10-17'
    """
    if kind not in _KINDS:
        raise ValueError(f"Unknown key kind: {kind}")
    for name, part in (
        ("namespace", namespace),
        ("scope_type", scope_type),
        ("identifier", identifier),
        ("period_key", period_key),
    ):
        if not part:
            raise ValueError(f"{name} must not be empty")
    return f"{namespace}:{scope_type}:{kind}:{identifier}:{period_key}"


def sliding_window_key(namespace: str, scope_type: str, identifier: str) -> str:
    return build_key(namespace, scope_type, WINDOW, identifier, SLIDING_PERIOD_KEY)


def fixed_window_key(
    namespace: str, scope_type: str, identifier: str, window_start_ms: int
) -> str:
    return build_key(namespace, scope_type, WINDOW, identifier, str(window_start_ms))


def ledger_key(
    namespace: str, scope_type: str, period_type: str, identifier: str, period_key: str
) -> str:
    return build_key(namespace, scope_type, period_type, identifier, period_key)
