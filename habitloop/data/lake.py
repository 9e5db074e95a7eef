"""Encrypted data lake: one age-encrypted JSON file per record, plus JSONL audit."""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pyrage
import pyrage.x25519

from habitloop.core.config import Settings

logger = logging.getLogger(__name__)

_SAFE_CATEGORY_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def encrypt_record(data: dict[str, Any], recipient_key: str) -> bytes:
    """Serialize a dict to JSON and encrypt it for an age recipient."""
    recipient = pyrage.x25519.Recipient.from_str(recipient_key)
    plaintext = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
    result: bytes = pyrage.encrypt(plaintext, [recipient])
    return result


def decrypt_record(ciphertext: bytes, identity_key: str) -> dict[str, Any]:
    """Decrypt age ciphertext with an identity and parse the JSON dict."""
    identity = pyrage.x25519.Identity.from_str(identity_key)
    plaintext: bytes = pyrage.decrypt(ciphertext, [identity])
    result: dict[str, Any] = json.loads(plaintext.decode("utf-8"))
    return result


def write_audit_entry(audit_path: Path, entry: dict[str, Any]) -> None:
    """Append a JSON-lines entry to an audit log file."""
    audit_path.parent.mkdir(parents=True, exist_ok=True)
    with audit_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(entry, default=str) + "\n")


def _category_dir(category: str, config: Settings) -> Path:
    # Security: category becomes a path component
    if not _SAFE_CATEGORY_RE.match(category):
        msg = f"Invalid category name: {category!r}"
        raise ValueError(msg)
    return config.data_lake_path / category


def store_record(record: dict[str, Any], category: str, config: Settings) -> Path:
    """Encrypt and store a single record under the category directory."""
    dest_dir = _category_dir(category, config)
    encrypted = encrypt_record(record, config.age_recipient)
    dest_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    dest_file = dest_dir / f"{ts}_{category}_0.age"
    idx = 0
    while dest_file.exists():
        idx += 1
        dest_file = dest_dir / f"{ts}_{category}_{idx}.age"
    dest_file.write_bytes(encrypted)

    write_audit_entry(
        config.data_audit_path / "lake.jsonl",
        {
            "timestamp": datetime.now(UTC).isoformat(),
            "action": "store",
            "category": category,
            "records": 1,
        },
    )
    return dest_file


def read_records(
    category: str,
    config: Settings,
    filters: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """Decrypt every record in a category, keeping those matching all filters."""
    lake_dir = _category_dir(category, config)
    write_audit_entry(
        config.data_audit_path / "lake.jsonl",
        {
            "timestamp": datetime.now(UTC).isoformat(),
            "action": "query",
            "category": category,
            "filters": filters,
        },
    )
    if not lake_dir.exists():
        return []

    results: list[dict[str, Any]] = []
    for age_file in sorted(lake_dir.glob("*.age")):
        try:
            record = decrypt_record(age_file.read_bytes(), config.age_identity)
        except Exception as exc:
            logger.error("Failed to decrypt %s: %s", age_file, exc)
            continue
        if filters and not all(record.get(k) == v for k, v in filters.items()):
            continue
        results.append(record)
    return results
