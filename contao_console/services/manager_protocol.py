"""ManagerApi protocol and its transport-neutral error.

UpdateWorkflow is written against this protocol. ContaoManagerClient
implements it over HTTP; tests implement it with in-memory fakes.
"""

from typing import Any, Protocol


class ManagerApiError(Exception):
    """Raised when a call to a remote Contao Manager fails.

    Attributes:
        message: Sanitized description of the failure.
        status_code: HTTP status, or None for transport failures.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ManagerApi(Protocol):
    """Remote calls the update workflow needs.

    Every method returns the decoded JSON body, or None when the manager
    answered 204 No Content.
    """

    async def get_task(self) -> dict[str, Any] | None:
        """Return the current task, None if no task exists."""
        ...

    async def put_task(self, name: str, config: dict[str, Any] | None = None) -> dict[str, Any] | None:
        """Submit a named task (e.g. ``composer/update``)."""
        ...

    async def delete_task(self) -> None:
        """Remove the finished task."""
        ...

    async def get_migration(self) -> dict[str, Any] | None:
        """Return the database migration task status."""
        ...

    async def start_migration(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        """Start a migration; an empty payload is a dry run."""
        ...

    async def delete_migration(self) -> None:
        """Remove the finished migration task."""
        ...

    async def get_self_update(self) -> dict[str, Any] | None:
        """Return ``{current_version, latest_version}`` of the manager."""
        ...

    async def update_version_info(self) -> dict[str, Any]:
        """Refresh and persist the installation's version info."""
        ...
