"""Typed domain exceptions.

Services raise these instead of matching on message strings, so callers
(CLI commands, the workflow) can branch on the failure type.

Usage:
    # In service layer
    raise NotFoundError("Site", url)

    # In a CLI command
    try:
        store.require_site(url)
    except NotFoundError as e:
        console.print(f"[red]{e}[/red]")
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ValidationError(DomainError):
    """Validation failure."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ScopeError(DomainError):
    """The site's permission scope does not cover the requested call."""

    def __init__(self, method: str, endpoint: str, scope: str) -> None:
        super().__init__(
            f"Access denied: {method} {endpoint} requires higher permissions "
            f"than '{scope}' scope"
        )
        self.method = method
        self.endpoint = endpoint
        self.scope = scope
