"""Append-only, hash-chained audit trail.

Each entry records the SHA-256 of its predecessor, so any mutation, deletion
or reordering of past entries is detected by ``verify``. Entries are written as
one canonical JSON document per line (JSONL) when a path is configured, or
kept in memory otherwise. There is no update or delete API.
"""
import asyncio
import hashlib
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from tradeguard.core.models import AuditEntry, ChainVerification, utc_now

logger = structlog.get_logger(__name__)

GENESIS_HASH = "GENESIS_0000000"


def canonical_json(record: Dict[str, Any]) -> str:
    """Serialize a record deterministically (sorted keys, no whitespace)."""
    return json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)


def hash_record(record: Dict[str, Any]) -> str:
    """SHA-256 of the canonical form of a record (without its own hash)."""
    body = {k: v for k, v in record.items() if k != "entry_hash"}
    return hashlib.sha256(canonical_json(body).encode("utf-8")).hexdigest()


def verify_records(records: List[Dict[str, Any]]) -> ChainVerification:
    """Walk records from genesis and report the first broken link.

    Positions are 1-based. An entry is broken when its stored hash does not
    match its content, or when its ``prev_hash`` does not match the hash of
    the entry before it.
    """
    expected_prev = GENESIS_HASH
    for position, record in enumerate(records, start=1):
        if record.get("prev_hash") != expected_prev:
            return ChainVerification(
                ok=False,
                checked=position - 1,
                broken_at=position,
                reason="prev_hash does not match preceding entry",
            )
        actual = hash_record(record)
        if record.get("entry_hash") != actual:
            return ChainVerification(
                ok=False,
                checked=position - 1,
                broken_at=position,
                reason="entry content does not match its hash",
            )
        if record.get("sequence") != position:
            return ChainVerification(
                ok=False,
                checked=position - 1,
                broken_at=position,
                reason="sequence out of order",
            )
        expected_prev = actual
    return ChainVerification(ok=True, checked=len(records))


class AuditLog:
    """
    Tamper-evident audit log.

    Writers are serialized through an asyncio lock so the chain never forks.
    Each appended record carries a strictly increasing ``chain_timestamp`` even
    when the wall clock does not advance between appends.
    """

    def __init__(self, path: Optional[str] = None):
        self.path: Optional[Path] = Path(path) if path else None
        self._lock = asyncio.Lock()
        self._records: List[Dict[str, Any]] = []
        self._last_hash = GENESIS_HASH
        self._last_timestamp: Optional[datetime] = None
        self._loaded = False

    def _load(self):
        """Read existing entries from disk, once."""
        if self._loaded:
            return
        self._loaded = True
        if self.path is None or not self.path.exists():
            return

        with self.path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    self._records.append(json.loads(line))

        if self._records:
            last = self._records[-1]
            self._last_hash = last.get("entry_hash", GENESIS_HASH)
            self._last_timestamp = datetime.fromisoformat(last["chain_timestamp"])

        logger.info("audit.loaded", path=str(self.path), entries=len(self._records))

    def _next_timestamp(self) -> datetime:
        now = utc_now()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    async def append(self, payload: Dict[str, Any]) -> str:
        """
        Append an entry and return its hash.

        Args:
            payload: JSON-serializable event body; Decimals and datetimes are
                stored as strings.

        Returns:
            The new entry's hash (the next entry's ``prev_hash``)
        """
        async with self._lock:
            self._load()

            record = {
                "sequence": len(self._records) + 1,
                "chain_timestamp": self._next_timestamp().isoformat(),
                "prev_hash": self._last_hash,
                # Round-trip so the in-memory copy matches what lands on disk
                "payload": json.loads(json.dumps(payload, default=str)),
            }
            record["entry_hash"] = hash_record(record)

            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(canonical_json(record) + "\n")

            self._records.append(record)
            self._last_hash = record["entry_hash"]

        logger.debug(
            "audit.appended",
            sequence=record["sequence"],
            audit_event=payload.get("event"),
        )
        return record["entry_hash"]

    async def verify(self) -> ChainVerification:
        """Recompute the chain from genesis and report the first broken entry."""
        async with self._lock:
            records = self._read_all()

        result = verify_records(records)
        if result.ok:
            logger.info("audit.verified", entries=result.checked)
        else:
            logger.critical(
                "audit.chain_broken",
                broken_at=result.broken_at,
                reason=result.reason,
            )
        return result

    def _read_all(self) -> List[Dict[str, Any]]:
        """Current chain contents, re-read from disk when file backed."""
        if self.path is None:
            return list(self._records)
        if not self.path.exists():
            return []
        records = []
        with self.path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    records.append(json.loads(line))
        return records

    async def entries(self, limit: Optional[int] = None) -> List[AuditEntry]:
        """Return entries oldest first (the last ``limit`` when given)."""
        async with self._lock:
            records = self._read_all()
        if limit is not None:
            records = records[-limit:]
        return [AuditEntry(**r) for r in records]

    @property
    def last_hash(self) -> str:
        self._load()
        return self._last_hash

    def __len__(self) -> int:
        self._load()
        return len(self._records)
