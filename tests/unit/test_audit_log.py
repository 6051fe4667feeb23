"""Unit tests for the hash-chained audit log."""
import json
import pytest
from decimal import Decimal

from tradeguard.audit.hash_chain import GENESIS_HASH, AuditLog, hash_record, verify_records
from tradeguard.core.config import LoggingConfig
from tradeguard.utils.logging_config import setup_logging


async def write_entries(log: AuditLog, count: int):
    for i in range(1, count + 1):
        await log.append({"event": "test.entry", "n": i})


def rewrite_line(path, index, mutate):
    """Apply ``mutate`` to the JSON record on 1-based line ``index``."""
    lines = path.read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[index - 1])
    mutate(record)
    lines[index - 1] = json.dumps(record)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


class TestAppend:
    """Test chain construction."""

    @pytest.mark.asyncio
    async def test_first_entry_links_to_genesis(self, audit_log):
        entry_hash = await audit_log.append({"event": "test.entry"})

        record = audit_log._records[0]
        assert record["sequence"] == 1
        assert record["prev_hash"] == GENESIS_HASH
        assert record["entry_hash"] == entry_hash == hash_record(record)

    @pytest.mark.asyncio
    async def test_entries_link_to_predecessor(self, audit_log):
        await write_entries(audit_log, 3)

        records = audit_log._records
        assert records[1]["prev_hash"] == records[0]["entry_hash"]
        assert records[2]["prev_hash"] == records[1]["entry_hash"]
        assert audit_log.last_hash == records[2]["entry_hash"]
        assert len(audit_log) == 3

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self, audit_log):
        await write_entries(audit_log, 20)

        stamps = [r["chain_timestamp"] for r in audit_log._records]
        assert stamps == sorted(set(stamps))

    @pytest.mark.asyncio
    async def test_payload_values_stringified(self, audit_log):
        await audit_log.append({"event": "test.entry", "amount": Decimal("1.50")})

        assert audit_log._records[0]["payload"]["amount"] == "1.50"

    @pytest.mark.asyncio
    async def test_entries_limit(self, audit_log):
        await write_entries(audit_log, 5)

        entries = await audit_log.entries(limit=2)

        assert [e.payload["n"] for e in entries] == [4, 5]

    @pytest.mark.asyncio
    async def test_append_with_debug_logging(self, audit_log):
        """Appends log cleanly once structlog is configured at DEBUG."""
        setup_logging(LoggingConfig(log_level="DEBUG", log_to_file=False))

        await audit_log.append({"event": "session.started", "portfolio": "KALIC"})
        await audit_log.append({"event": "session.ended", "portfolio": "KALIC"})

        assert len(audit_log) == 2


class TestVerify:
    """Test tamper detection."""

    @pytest.mark.asyncio
    async def test_empty_chain_verifies(self, audit_log):
        result = await audit_log.verify()
        assert result.ok
        assert result.checked == 0

    @pytest.mark.asyncio
    async def test_intact_chain_verifies(self, audit_log):
        await write_entries(audit_log, 5)

        result = await audit_log.verify()

        assert result.ok
        assert result.checked == 5
        assert result.broken_at is None

    @pytest.mark.asyncio
    async def test_mutated_entry_detected(self, tmp_path):
        """Editing entry 2 on disk breaks the chain at entry 2."""
        path = tmp_path / "audit.jsonl"
        log = AuditLog(str(path))
        await write_entries(log, 4)

        rewrite_line(path, 2, lambda r: r["payload"].update(n=99))
        result = await log.verify()

        assert not result.ok
        assert result.broken_at == 2
        assert result.checked == 1

    @pytest.mark.asyncio
    async def test_rehashed_entry_breaks_next_link(self, tmp_path):
        """Recomputing the tampered hash moves the break to the following entry."""
        path = tmp_path / "audit.jsonl"
        log = AuditLog(str(path))
        await write_entries(log, 4)

        def tamper(record):
            record["payload"]["n"] = 99
            record["entry_hash"] = hash_record(record)

        rewrite_line(path, 2, tamper)
        result = await log.verify()

        assert result.broken_at == 3
        assert "prev_hash" in result.reason

    @pytest.mark.asyncio
    async def test_deleted_entry_detected(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        log = AuditLog(str(path))
        await write_entries(log, 4)

        lines = path.read_text(encoding="utf-8").splitlines()
        del lines[1]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        result = await log.verify()
        assert result.broken_at == 2

    def test_reordered_sequence_detected(self):
        first = {"sequence": 2, "chain_timestamp": "t", "prev_hash": GENESIS_HASH, "payload": {}}
        first["entry_hash"] = hash_record(first)

        result = verify_records([first])

        assert result.broken_at == 1
        assert result.reason == "sequence out of order"


class TestPersistence:
    """Test reopening a file-backed log."""

    @pytest.mark.asyncio
    async def test_reopen_continues_chain(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        first = AuditLog(str(path))
        await write_entries(first, 3)

        reopened = AuditLog(str(path))
        await reopened.append({"event": "test.entry", "n": 4})

        assert len(reopened) == 4
        result = await reopened.verify()
        assert result.ok
        assert result.checked == 4
