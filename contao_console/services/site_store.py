"""SiteCredentialStore: the persisted multi-site config document.

Owns read/modify/write of ``config.json``. Tokens are encrypted with
TokenCipher on every write and decrypted on every read, so the file never
holds a plaintext token while the in-memory document never holds an
encrypted one.

Older document shapes are migrated on load:
    - legacy single-site ``{"token", "managerUrl"}`` becomes a ``sites`` map
    - token-holding sites without ``authMethod`` become token sites
    - sites without a scope, and cookie sites stuck on ``read``, become ``admin``

Expected conditions (missing file, unknown site) and I/O failures never
raise: reads degrade to an empty document and writes return False.
"""

import copy
import json
import logging
import os
import platform
import stat
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from contao_console.errors import NotFoundError, ValidationError
from contao_console.services.token_cipher import (
    DecryptionError,
    PlaintextToken,
    TokenCipher,
    parse_stored_token,
)
from contao_console.utils.paths import get_config_path

logger = logging.getLogger(__name__)

VALID_AUTH_METHODS = ("token", "cookie")
# Ordered lowest to highest
SCOPE_LEVELS = ("read", "update", "install", "admin")
DEFAULT_SCOPE = "admin"
WORKFLOW_TYPES = ("update", "migration", "composer")
HISTORY_STATUSES = ("started", "finished", "cancelled", "error")


def _utc_now_iso() -> str:
    """Return current UTC time as ISO8601 string."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def extract_site_name(url: str) -> str:
    """Return the hostname of url, or url itself if it has none."""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return url
    return hostname or url


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class VersionInfo(_Model):
    """Versions reported by a remote installation."""

    contao_manager_version: str | None = Field(default=None, alias="contaoManagerVersion")
    php_version: str | None = Field(default=None, alias="phpVersion")
    contao_version: str | None = Field(default=None, alias="contaoVersion")
    last_updated: str | None = Field(default=None, alias="lastUpdated")


class HistoryStep(_Model):
    """Summary of one workflow step as recorded in site history."""

    id: str
    title: str
    summary: str = ""
    status: str
    start_time: str | None = Field(default=None, alias="startTime")
    end_time: str | None = Field(default=None, alias="endTime")
    error: str | None = None


class HistoryEntry(_Model):
    """One workflow run against a site."""

    id: str
    workflow_type: str = Field(alias="workflowType")
    status: str = "started"
    start_time: str = Field(alias="startTime")
    end_time: str | None = Field(default=None, alias="endTime")
    steps: list[HistoryStep] = Field(default_factory=list)


class SiteRecord(_Model):
    """One managed remote installation. ``token`` is always plaintext here."""

    name: str
    url: str
    auth_method: str = Field(default="token", alias="authMethod")
    token: str | None = None
    user: dict[str, Any] | None = None
    scope: str | None = None
    last_used: str = Field(default_factory=_utc_now_iso, alias="lastUsed")
    version_info: VersionInfo | None = Field(default=None, alias="versionInfo")
    history: list[HistoryEntry] = Field(default_factory=list)


class ConfigDocument(_Model):
    """All sites keyed by URL plus the active-site pointer."""

    sites: dict[str, SiteRecord] = Field(default_factory=dict)
    active_site: str | None = Field(default=None, alias="activeSite")

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize with the on-disk camelCase keys; ``activeSite`` is always present."""
        data = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        data["activeSite"] = self.active_site
        return data


@dataclass
class LoadResult:
    """Outcome of reading the config document.

    Attributes:
        document: The normalized document (empty on failure).
        migrated: Whether an older shape was upgraded and written back.
        dropped_tokens: URLs whose stored token could not be decrypted.
        error: Description of a read/parse failure, if any.
    """

    document: ConfigDocument
    migrated: bool = False
    dropped_tokens: list[str] = field(default_factory=list)
    error: str | None = None


def _migrate_legacy_shape(raw: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Turn a single-site ``{token, managerUrl}`` document into the sites map."""
    if not (raw.get("token") and raw.get("managerUrl")):
        return raw, False
    url = raw["managerUrl"]
    logger.info("Migrating legacy single-site config for %s", url)
    return {
        "sites": {
            url: {
                "name": extract_site_name(url),
                "url": url,
                "token": raw["token"],
                "authMethod": "token",
                "lastUsed": _utc_now_iso(),
            },
        },
        "activeSite": url,
    }, True


def _normalize_site_fields(url: str, site: dict[str, Any]) -> bool:
    """Fill missing identity fields and upgrade auth/scope in place.

    Returns:
        True if anything was changed.
    """
    changed = False
    if not site.get("url"):
        site["url"] = url
        changed = True
    if not site.get("name"):
        site["name"] = extract_site_name(url)
        changed = True
    if not site.get("authMethod") and site.get("token"):
        site["authMethod"] = "token"
        changed = True
    if not site.get("scope") or (site.get("authMethod") == "cookie" and site.get("scope") == "read"):
        site["scope"] = DEFAULT_SCOPE
        changed = True
    return changed


class SiteCredentialStore:
    """Loads and saves the site config document with encrypted tokens.

    Args:
        cipher: TokenCipher used for every token read and write.
        config_path: Path of the JSON document. Defaults to the platform data dir.
    """

    def __init__(self, cipher: TokenCipher, config_path: str | Path | None = None) -> None:
        self._cipher = cipher
        self._path = Path(config_path) if config_path else get_config_path()

    @classmethod
    def from_env(cls, config_path: str | Path | None = None) -> "SiteCredentialStore":
        """Build a store keyed by TOKEN_MASTER_KEY.

        Raises:
            ValueError: If the master key is missing or malformed. There is
                no plaintext fallback.
        """
        return cls(TokenCipher(), config_path)

    @property
    def path(self) -> Path:
        return self._path

    # -- load / save ------------------------------------------------------

    def load(self) -> ConfigDocument:
        """Return the current document (empty if absent or unreadable)."""
        return self.load_result().document

    def load_result(self) -> LoadResult:
        """Read, migrate and decrypt the config document.

        Per-site problems (undecryptable token, invalid record) drop only
        that token or site. A migrated document is written back.
        """
        if not self._path.exists():
            return LoadResult(document=ConfigDocument())

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("Error loading config from %s: %s", self._path, e)
            return LoadResult(document=ConfigDocument(), error=str(e))

        if not isinstance(raw, dict):
            logger.error("Config at %s is not a JSON object, ignoring", self._path)
            return LoadResult(document=ConfigDocument(), error="config is not a JSON object")

        raw, migrated = _migrate_legacy_shape(raw)
        raw_sites = raw.get("sites") or {}
        if not isinstance(raw_sites, dict):
            logger.error("Config 'sites' is not an object, ignoring it")
            raw_sites = {}
            migrated = True

        result = LoadResult(document=ConfigDocument())
        sites: dict[str, SiteRecord] = {}
        for url, site in raw_sites.items():
            if not isinstance(site, dict):
                logger.warning("Dropping malformed site entry %s", url)
                migrated = True
                continue
            site = dict(site)
            if _normalize_site_fields(url, site):
                migrated = True
            site["token"] = self._read_token(url, site.get("token"), result)
            try:
                sites[url] = SiteRecord.model_validate(site)
            except PydanticValidationError as e:
                logger.warning("Dropping invalid site entry %s: %s", url, e.errors()[:1])
                migrated = True

        active = raw.get("activeSite")
        if active is not None and active not in sites:
            logger.warning("Active site %s is not configured, resetting", active)
            active = next(iter(sites), None)
            migrated = True

        result.document = ConfigDocument(sites=sites, active_site=active)
        if migrated:
            logger.info("Writing migrated config to %s", self._path)
            self.save(result.document)
        result.migrated = migrated
        return result

    def _read_token(self, url: str, raw_token: Any, result: LoadResult) -> str | None:
        """Decode one stored token into plaintext, or None if unusable."""
        try:
            stored = parse_stored_token(raw_token)
        except DecryptionError as e:
            logger.error("Failed to read token for site %s: %s", url, e)
            result.dropped_tokens.append(url)
            return None
        if stored is None:
            return None
        if isinstance(stored, PlaintextToken):
            return stored.value
        try:
            return self._cipher.decrypt(stored, url)
        except DecryptionError as e:
            logger.error("Failed to decrypt token for site %s: %s", url, e)
            result.dropped_tokens.append(url)
            return None

    def save(self, doc: ConfigDocument) -> bool:
        """Write doc with every plaintext token encrypted.

        Returns:
            True on success, False if encryption or the write failed.
        """
        data = copy.deepcopy(doc.to_json_dict())
        for url, site in data.get("sites", {}).items():
            token = site.get("token")
            if isinstance(token, str) and token:
                try:
                    site["token"] = self._cipher.encrypt(token, url).to_dict()
                except Exception as e:
                    # Never fall back to writing the plaintext token
                    logger.error("Failed to encrypt token for site %s: %s", url, e)
                    return False

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            if platform.system() != "Windows":
                os.chmod(self._path, stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            logger.error("Error saving config to %s: %s", self._path, e)
            return False
        return True

    # -- site operations --------------------------------------------------

    def add_or_update_site(
        self,
        url: str,
        token: str | None = None,
        name: str | None = None,
        auth_method: str = "token",
        user: dict[str, Any] | None = None,
        scope: str | None = None,
    ) -> bool:
        """Insert or re-authenticate a site.

        Re-authenticating an existing site keeps its other fields, swaps the
        auth data and makes it the active site. A new site becomes active
        only if it is the first one or nothing is active.

        Raises:
            ValidationError: On an unknown auth method or scope.
        """
        if auth_method not in VALID_AUTH_METHODS:
            raise ValidationError(f"Unknown auth method '{auth_method}'")
        if scope is not None and scope not in SCOPE_LEVELS:
            raise ValidationError(f"Unknown scope '{scope}'")

        doc = self.load()
        existing = doc.sites.get(url)

        if existing is not None:
            if auth_method == "token":
                if token:
                    existing.token = token
                if scope:
                    existing.scope = scope
                existing.user = None
            else:
                existing.user = user
                existing.scope = scope or DEFAULT_SCOPE
                existing.token = None
            existing.auth_method = auth_method
            existing.last_used = _utc_now_iso()
            if name:
                existing.name = name
            doc.active_site = url
            logger.info("Updated authentication for site %s (%s)", url, auth_method)
        else:
            site = SiteRecord(
                name=name or extract_site_name(url),
                url=url,
                auth_method=auth_method,
            )
            if auth_method == "token":
                site.token = token or None
            else:
                site.user = user
            site.scope = scope or DEFAULT_SCOPE
            doc.sites[url] = site
            if not doc.active_site or len(doc.sites) == 1:
                doc.active_site = url
            logger.info("Added site %s (%s)", url, auth_method)

        return self.save(doc)

    def get_active_site(self) -> SiteRecord | None:
        doc = self.load()
        if doc.active_site and doc.active_site in doc.sites:
            return doc.sites[doc.active_site]
        return None

    def get_all_sites(self) -> dict[str, SiteRecord]:
        return self.load().sites

    def require_site(self, url: str) -> SiteRecord:
        """Return the site stored under url.

        Raises:
            NotFoundError: If no such site is configured.
        """
        site = self.load().sites.get(url)
        if site is None:
            raise NotFoundError("Site", url)
        return site

    def set_active_site(self, url: str) -> bool:
        """Switch the active pointer to url. False if url is unknown."""
        doc = self.load()
        site = doc.sites.get(url)
        if site is None:
            return False
        doc.active_site = url
        site.last_used = _utc_now_iso()
        return self.save(doc)

    def remove_site(self, url: str) -> bool:
        """Delete a site, moving the active pointer if it pointed at it."""
        doc = self.load()
        if url not in doc.sites:
            return False
        del doc.sites[url]
        if doc.active_site == url:
            doc.active_site = next(iter(doc.sites), None)
        logger.info("Removed site %s", url)
        return self.save(doc)

    def update_site_name(self, url: str, name: str) -> bool:
        doc = self.load()
        if url not in doc.sites:
            return False
        doc.sites[url].name = name
        return self.save(doc)

    def update_site_version_info(self, url: str, version_info: VersionInfo | dict[str, Any]) -> bool:
        """Store freshly fetched versions for url, stamping lastUpdated."""
        doc = self.load()
        if url not in doc.sites:
            return False
        if isinstance(version_info, dict):
            version_info = VersionInfo.model_validate(version_info)
        doc.sites[url].version_info = version_info.model_copy(
            update={"last_updated": _utc_now_iso()}
        )
        return self.save(doc)

    # -- history ----------------------------------------------------------

    def add_history_entry(self, url: str, workflow_type: str) -> HistoryEntry | None:
        """Record the start of a workflow run. None if the site is unknown or the write fails."""
        if workflow_type not in WORKFLOW_TYPES:
            raise ValidationError(f"Unknown workflow type '{workflow_type}'")
        doc = self.load()
        site = doc.sites.get(url)
        if site is None:
            return None
        entry = HistoryEntry(
            id=uuid.uuid4().hex,
            workflow_type=workflow_type,
            status="started",
            start_time=_utc_now_iso(),
        )
        site.history.append(entry)
        if not self.save(doc):
            return None
        return entry

    def update_history_entry(
        self,
        url: str,
        entry_id: str,
        status: str | None = None,
        end_time: str | None = None,
        steps: list[HistoryStep | dict[str, Any]] | None = None,
    ) -> bool:
        """Update status/end time/steps of a recorded run."""
        if status is not None and status not in HISTORY_STATUSES:
            raise ValidationError(f"Unknown history status '{status}'")
        doc = self.load()
        site = doc.sites.get(url)
        if site is None:
            return False
        entry = next((e for e in site.history if e.id == entry_id), None)
        if entry is None:
            return False
        if status is not None:
            entry.status = status
            if status != "started" and end_time is None:
                end_time = _utc_now_iso()
        if end_time is not None:
            entry.end_time = end_time
        if steps is not None:
            entry.steps = [
                s if isinstance(s, HistoryStep) else HistoryStep.model_validate(s)
                for s in steps
            ]
        return self.save(doc)

    def get_history(self, url: str) -> list[HistoryEntry]:
        """Return the runs recorded for url, newest first."""
        site = self.load().sites.get(url)
        if site is None:
            return []
        return list(reversed(site.history))
