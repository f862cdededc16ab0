"""Error types for the Contao Manager console.

- DomainError: base for service-level failures
- NotFoundError: unknown site or history entry
- ValidationError: rejected input
- ScopeError: cookie session scope too low for a remote call
"""

from contao_console.errors.domain import (
    DomainError,
    NotFoundError,
    ScopeError,
    ValidationError,
)

__all__ = [
    "DomainError",
    "NotFoundError",
    "ScopeError",
    "ValidationError",
]
