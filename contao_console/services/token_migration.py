"""Encrypt plaintext tokens of an existing config document in place.

Operator-invoked (``contao-console migrate-tokens``). The original file
is copied to ``config.backup.json`` before anything else happens, every
newly encrypted token is decrypted again and compared before the file is
rewritten, and the backup is restored if anything unexpected fails
mid-run.
"""

import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from contao_console.services.token_cipher import TokenCipher, is_encrypted
from contao_console.utils.paths import get_backup_path
from contao_console.utils.redaction import mask_token

logger = logging.getLogger(__name__)


@dataclass
class MigrationSummary:
    """Outcome of one migration run."""

    encrypted: list[str] = field(default_factory=list)
    already_encrypted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    backup_path: Path | None = None
    written: bool = False


def migrate_tokens(config_path: str | Path, cipher: TokenCipher) -> MigrationSummary:
    """Encrypt every plaintext token in the config document at config_path.

    Args:
        config_path: Path of the config document.
        cipher: Cipher holding the master key to encrypt with.

    Returns:
        MigrationSummary listing the sites per outcome.

    Raises:
        FileNotFoundError: If config_path does not exist.
        Exception: Any unexpected failure, after the backup was restored.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    summary = MigrationSummary(backup_path=get_backup_path(path))
    shutil.copy2(path, summary.backup_path)
    logger.info("Backup created at %s", summary.backup_path)

    try:
        config = json.loads(path.read_text(encoding="utf-8"))
        sites = config.get("sites") if isinstance(config, dict) else None
        if not sites:
            logger.info("No sites found in config - nothing to migrate")
            return summary

        for url, site in sites.items():
            token = site.get("token")
            if not token:
                summary.skipped.append(url)
                continue
            if is_encrypted(token):
                summary.already_encrypted.append(url)
                continue
            if not isinstance(token, str):
                summary.errors.append(f"{url}: token has an unrecognised shape")
                continue

            secret = cipher.encrypt(token, url)
            if cipher.decrypt(secret, url) != token:
                summary.errors.append(f"{url}: decrypted token does not match original")
                continue
            site["token"] = secret.to_dict()
            summary.encrypted.append(url)
            logger.info("Encrypted token %s for %s", mask_token(token), url)

        if summary.encrypted:
            path.write_text(json.dumps(config, indent=2), encoding="utf-8")
            summary.written = True
            logger.info("Saved encrypted configuration to %s", path)
    except Exception:
        logger.exception("Token migration failed, restoring backup")
        shutil.copy2(summary.backup_path, path)
        raise

    return summary
