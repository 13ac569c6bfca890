"""HTTP integration helpers."""

from .admission import (
    admission_dependency,
    apply_admission_headers,
    denial_exception,
    register_exception_handlers,
)

__all__ = [
    "admission_dependency",
    "apply_admission_headers",
    "denial_exception",
    "register_exception_handlers",
]
