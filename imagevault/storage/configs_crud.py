"""Secret configuration storage for the single-tenant ``user_configs`` row.

Each kind lives in its own JSON column. Credential fields are encrypted
field-by-field before they reach the database and decrypted on read.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from imagevault.crypto import EncryptionService
from imagevault.utils import from_json

from .base import DEFAULT_USER_ID
from .driver import Session

logger = logging.getLogger(__name__)

CONFIG_COLUMNS = {
    "api": "api_config",
    "oss": "oss_config",
    "preferences": "preferences",
}

SECRET_FIELDS = {
    "api": ("apiKey",),
    "oss": ("accessKeyId", "accessKeySecret"),
    "preferences": (),
}

BASELINE_KEYS = ("updatedAt", "updated_at")
URL_FIELDS = ("baseUrl", "endpoint")
BUCKET_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$")

TIMEOUT_RANGE = (1000, 300000)  # milliseconds
RETRY_COUNT_RANGE = (0, 10)


def config_column(kind: str) -> str:
    """Column for a config kind.

    Raises:
        ValueError: If the kind is unknown
    """
    if kind not in CONFIG_COLUMNS:
        raise ValueError(f"Invalid config kind: {kind} (expected one of {', '.join(CONFIG_COLUMNS)})")
    return CONFIG_COLUMNS[kind]


def _is_absolute_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(kind: str, config: Dict[str, Any]) -> None:
    """Check a config before it is stored.

    Raises:
        ValueError: Listing every problem found
    """
    config_column(kind)
    if not isinstance(config, dict):
        raise ValueError("Config must be a mapping")

    problems: List[str] = []
    for secret in SECRET_FIELDS[kind]:
        value = config.get(secret)
        if not isinstance(value, str) or not value.strip():
            problems.append(f"{secret} is required")

    if kind == "api":
        if "baseUrl" in config and not _is_absolute_url(config["baseUrl"]):
            problems.append("baseUrl must be an absolute http(s) URL")
        if "timeout" in config and not (_is_number(config["timeout"]) and config["timeout"] > 0):
            problems.append("timeout must be a positive number")
        if "retryCount" in config and not (_is_number(config["retryCount"]) and config["retryCount"] >= 0):
            problems.append("retryCount must be zero or more")

    if kind == "oss":
        bucket = config.get("bucket")
        if bucket is not None and not (isinstance(bucket, str) and BUCKET_PATTERN.match(bucket)):
            problems.append("bucket must be 3-63 lowercase letters, digits or hyphens")
        if "endpoint" in config and not _is_absolute_url(config["endpoint"]):
            problems.append("endpoint must be an absolute http(s) URL")

    if problems:
        raise ValueError(f"Invalid {kind} config: {'; '.join(problems)}")


def _clamp(value: float, bounds) -> Any:
    low, high = bounds
    return max(low, min(high, value))


def clean_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Trim strings, drop trailing URL slashes and clamp numeric ranges.

    Baseline timestamps are removed; they steer conflict detection and are
    not part of the stored blob.
    """
    cleaned: Dict[str, Any] = {}
    for key, value in config.items():
        if key in BASELINE_KEYS:
            continue
        if isinstance(value, str):
            value = value.strip()
            if key in URL_FIELDS:
                value = value.rstrip("/")
        cleaned[key] = value

    if _is_number(cleaned.get("timeout")):
        cleaned["timeout"] = _clamp(cleaned["timeout"], TIMEOUT_RANGE)
    if _is_number(cleaned.get("retryCount")):
        cleaned["retryCount"] = _clamp(cleaned["retryCount"], RETRY_COUNT_RANGE)
    return cleaned


def encrypt_fields(kind: str, config: Dict[str, Any], encryption: EncryptionService) -> Dict[str, Any]:
    """Encrypt every non-empty credential field.

    ``config`` always holds plaintext here, so values that merely look like
    blobs are encrypted too.
    """
    stored = dict(config)
    for secret in SECRET_FIELDS[kind]:
        value = stored.get(secret)
        if isinstance(value, str) and value:
            stored[secret] = encryption.encrypt(value)
    return stored


def decrypt_fields(kind: str, stored: Dict[str, Any], encryption: EncryptionService) -> Dict[str, Any]:
    """Decrypt credential fields. Values that are not blobs are returned as stored."""
    config = dict(stored)
    for secret in SECRET_FIELDS[kind]:
        value = config.get(secret)
        if isinstance(value, str) and encryption.is_encrypted(value):
            config[secret] = encryption.decrypt(value)
    return config


def fetch_config_row(session: Session, for_update: bool = False) -> Optional[Dict[str, Any]]:
    lock = " FOR UPDATE" if for_update else ""
    return session.query_one(f"SELECT * FROM user_configs WHERE user_id = %s{lock}", (DEFAULT_USER_ID,))


def read_config_blob(row: Optional[Dict[str, Any]], kind: str) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    blob = from_json(row.get(config_column(kind)))
    return blob if isinstance(blob, dict) else None


def write_config_blob(session: Session, kind: str, blob: Optional[Dict[str, Any]], now: datetime) -> int:
    column = config_column(kind)
    return session.run(
        f"""
        INSERT INTO user_configs (user_id, {column}, created_at, updated_at)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (user_id) DO UPDATE SET {column} = EXCLUDED.{column}, updated_at = EXCLUDED.updated_at
        """,
        (DEFAULT_USER_ID, blob, now, now),
    )


def clear_config_blob(session: Session, kind: str, now: datetime) -> int:
    column = config_column(kind)
    return session.run(
        f"UPDATE user_configs SET {column} = NULL, updated_at = %s WHERE user_id = %s",
        (now, DEFAULT_USER_ID),
    )
