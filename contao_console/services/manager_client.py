"""HTTP client for one remote Contao Manager installation.

Thin wrapper around httpx that implements ManagerApi. Token sites
authenticate with the ``Contao-Manager-Auth`` header and fall back to
``Authorization: Bearer`` once when the manager answers 401. Cookie
sites forward the session cookie and are checked against their scope
before any request is sent.

Error responses raise ManagerApiError so the client is usable from the
workflow, the CLI and tests alike.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from contao_console.errors import ScopeError, ValidationError
from contao_console.services.manager_protocol import ManagerApiError
from contao_console.services.site_store import (
    SCOPE_LEVELS,
    SiteCredentialStore,
    SiteRecord,
    VersionInfo,
)
from contao_console.utils.redaction import redact_for_logging, sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

TASK_ENDPOINT = "/api/task"
MIGRATION_ENDPOINT = "/api/contao/database-migration"
SELF_UPDATE_ENDPOINT = "/api/server/self-update"
PHP_WEB_ENDPOINT = "/api/server/php-web"
CONTAO_ENDPOINT = "/api/server/contao"

_ADMIN_PREFIXES = ("/api/users",)


def required_scope(method: str, endpoint: str) -> str:
    """Return the lowest scope allowed to call ``method endpoint``."""
    if endpoint.startswith(_ADMIN_PREFIXES):
        return "admin"
    if method.upper() == "GET":
        return "read"
    return "update"


def scope_allows(granted: str, required: str) -> bool:
    """Whether ``granted`` is at least ``required`` in read < update < install < admin."""
    if granted not in SCOPE_LEVELS or required not in SCOPE_LEVELS:
        return False
    return SCOPE_LEVELS.index(granted) >= SCOPE_LEVELS.index(required)


class ContaoManagerClient:
    """ManagerApi implementation talking to a site over HTTP.

    Args:
        site: Site to talk to (token already decrypted).
        store: Store used to persist refreshed version info. Optional.
        cookie: Session cookie header for cookie-authenticated sites.
        timeout: Per-request timeout in seconds.
        transport: Custom httpx transport (tests).

    Raises:
        ValidationError: If a token site has no token.
    """

    def __init__(
        self,
        site: SiteRecord,
        store: SiteCredentialStore | None = None,
        *,
        cookie: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if site.auth_method == "token" and not site.token:
            raise ValidationError(f"Site {site.url} has no token configured")
        self._site = site
        self._store = store
        self._cookie = cookie
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def site(self) -> SiteRecord:
        return self._site

    async def __aenter__(self) -> "ContaoManagerClient":
        """Open the httpx async client."""
        self._client = httpx.AsyncClient(
            base_url=self._site.url.rstrip("/"),
            timeout=self._timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close the httpx async client."""
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -- transport --------------------------------------------------------

    def _check_scope(self, method: str, endpoint: str) -> None:
        if self._site.auth_method != "cookie" or not self._site.scope:
            return
        if not scope_allows(self._site.scope, required_scope(method, endpoint)):
            logger.warning(
                "Scope '%s' denied for %s %s on %s",
                self._site.scope, method, endpoint, self._site.url,
            )
            raise ScopeError(method, endpoint, self._site.scope)

    def _auth_headers(self, bearer: bool = False) -> dict[str, str]:
        if self._site.auth_method == "cookie":
            return {"Cookie": self._cookie} if self._cookie else {}
        if bearer:
            return {"Authorization": f"Bearer {self._site.token}"}
        return {"Contao-Manager-Auth": self._site.token or ""}

    async def _send(
        self, method: str, endpoint: str, json: dict[str, Any] | None, bearer: bool,
    ) -> httpx.Response:
        if self._client is None:
            raise RuntimeError("ContaoManagerClient must be used as an async context manager")
        try:
            return await self._client.request(
                method, endpoint, json=json, headers=self._auth_headers(bearer),
            )
        except httpx.HTTPError as e:
            raise ManagerApiError(
                sanitize_error_message(f"{method} {endpoint} failed: {e}") or "",
            ) from e

    async def request(
        self, method: str, endpoint: str, json: dict[str, Any] | None = None,
    ) -> Any:
        """Send one request and decode the response.

        Returns:
            Decoded JSON, response text for non-JSON bodies, or None for
            204 / empty responses.

        Raises:
            ScopeError: Cookie session scope is too low for this call.
            ManagerApiError: Transport failure or non-2xx status.
        """
        self._check_scope(method, endpoint)
        if json is not None:
            logger.debug("%s %s%s %s", method, self._site.url, endpoint, redact_for_logging(json))
        else:
            logger.debug("%s %s%s", method, self._site.url, endpoint)
        resp = await self._send(method, endpoint, json, bearer=False)
        if resp.status_code == 401 and self._site.auth_method == "token":
            logger.debug("Contao-Manager-Auth rejected for %s, retrying with Bearer", endpoint)
            resp = await self._send(method, endpoint, json, bearer=True)
        return self._decode(method, endpoint, resp)

    def _decode(self, method: str, endpoint: str, resp: httpx.Response) -> Any:
        if resp.status_code >= 400:
            try:
                body = resp.json()
                detail = body.get("detail") or body.get("title") or resp.text
            except (ValueError, AttributeError):
                detail = resp.text
            message = sanitize_error_message(
                f"{method} {endpoint} returned {resp.status_code}: {detail}"
            ) or ""
            raise ManagerApiError(message, status_code=resp.status_code)

        if resp.status_code == 204 or not resp.content.strip():
            return None
        if "json" in resp.headers.get("content-type", ""):
            try:
                return resp.json()
            except ValueError as e:
                raise ManagerApiError(
                    f"{method} {endpoint} returned invalid JSON", status_code=resp.status_code,
                ) from e
        return resp.text

    # -- tasks ------------------------------------------------------------

    async def get_task(self) -> dict[str, Any] | None:
        return await self.request("GET", TASK_ENDPOINT)

    async def put_task(self, name: str, config: dict[str, Any] | None = None) -> dict[str, Any] | None:
        payload: dict[str, Any] = {"name": name}
        if config is not None:
            payload["config"] = config
        logger.info("Submitting task %s to %s", name, self._site.url)
        return await self.request("PUT", TASK_ENDPOINT, json=payload)

    async def delete_task(self) -> None:
        await self.request("DELETE", TASK_ENDPOINT)

    # -- database migrations ----------------------------------------------

    async def get_migration(self) -> dict[str, Any] | None:
        return await self.request("GET", MIGRATION_ENDPOINT)

    async def start_migration(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        logger.info(
            "Starting %s on %s",
            "migration" if payload.get("hash") else "migration dry run", self._site.url,
        )
        return await self.request("PUT", MIGRATION_ENDPOINT, json=payload)

    async def delete_migration(self) -> None:
        await self.request("DELETE", MIGRATION_ENDPOINT)

    # -- server info ------------------------------------------------------

    async def get_self_update(self) -> dict[str, Any] | None:
        return await self.request("GET", SELF_UPDATE_ENDPOINT)

    async def get_php_web(self) -> dict[str, Any] | None:
        return await self.request("GET", PHP_WEB_ENDPOINT)

    async def get_contao(self) -> dict[str, Any] | None:
        return await self.request("GET", CONTAO_ENDPOINT)

    async def _fetch_version(
        self, fetch: Callable[[], Awaitable[Any]], field_name: str,
    ) -> str | None:
        """Read one version field; failures are logged and yield None."""
        try:
            data = await fetch()
        except (ManagerApiError, ScopeError) as e:
            logger.warning("Failed to read %s from %s: %s", field_name, self._site.url, e)
            return None
        if isinstance(data, dict) and data.get(field_name):
            return str(data[field_name])
        return None

    async def update_version_info(self) -> dict[str, Any]:
        """Collect manager, PHP and Contao versions and persist them.

        Each version is fetched independently; one failing endpoint does
        not prevent the others from being recorded.

        Returns:
            ``{"success": bool, "versionInfo": {...}}``. ``success`` is
            False only when persisting to the store failed.
        """
        info = VersionInfo(
            contao_manager_version=await self._fetch_version(self.get_self_update, "current_version"),
            php_version=await self._fetch_version(self.get_php_web, "version"),
            contao_version=await self._fetch_version(self.get_contao, "version"),
        )
        success = True
        if self._store is not None:
            success = self._store.update_site_version_info(self._site.url, info)
            if not success:
                logger.error("Failed to save version information for %s", self._site.url)
        return {
            "success": success,
            "versionInfo": info.model_dump(by_alias=True, exclude_none=True),
        }
