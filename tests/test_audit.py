"""Unit tests for the audit log."""

import os
import time
from datetime import datetime, timedelta, timezone

import pytest

from agile_vault.audit import AuditLogger


def rotated_logs(audit_logger):
    return sorted(audit_logger.log_path.parent.glob(f"{audit_logger.log_path.name}.*"))


def backdate(path, days):
    mtime = time.time() - days * 86400
    os.utime(path, (mtime, mtime))


class TestSetup:
    """Tests for log file creation."""

    def test_private_permissions(self, temp_vault_dir):
        """Test the log directory and file are owner-only."""
        audit_logger = AuditLogger(temp_vault_dir / "agent" / "access.log")

        assert oct(audit_logger.log_path.parent.stat().st_mode)[-3:] == "700"
        assert oct(audit_logger.log_path.stat().st_mode)[-3:] == "600"


class TestEventFormat:
    """Tests for the layout of one event line."""

    def test_fields(self, audit_logger):
        """Test timestamp, actor, result, action and target positions."""
        audit_logger.log_event("vault", "ALLOWED", "UNLOCK", "test.agilekeychain")

        timestamp, actor, result, action, target = audit_logger.read_recent(1)[0].split()
        assert datetime.strptime(timestamp, "%Y-%m-%dT%H:%M:%S.%fZ")
        assert (actor, result, action, target) == ("[vault]", "ALLOWED", "UNLOCK", "test.agilekeychain")

    def test_reason_is_flattened(self, audit_logger):
        """Test a reason spanning lines is written on the event line."""
        audit_logger.log_event("agent", "ERROR", "DECRYPT", "KEY1", "bad padding\n  at block 3")

        lines = audit_logger.read_recent(10)
        assert len(lines) == 1
        assert lines[0].rstrip("\n").endswith("KEY1 bad padding at block 3")

    @pytest.mark.parametrize("target", ["", None])
    def test_missing_target(self, audit_logger, target):
        """Test an absent target is written as a dash."""
        audit_logger.log_event("agent", "ERROR", "REQUEST", target)

        assert audit_logger.read_recent(1)[0].split()[4] == "-"

    def test_non_string_target(self, audit_logger):
        """Test a target that is not a string is still logged."""
        audit_logger.log_event("agent", "DENIED", "ENCRYPT", 42, "UNKNOWN_KEY")

        assert audit_logger.read_recent(1)[0].split()[4:] == ["42", "UNKNOWN_KEY"]

    def test_read_recent_keeps_order(self, audit_logger):
        """Test read_recent returns the newest entries oldest first."""
        for uuid in ("A" * 32, "B" * 32, "C" * 32):
            audit_logger.log_event("vault", "ALLOWED", "SAVE", uuid)

        assert [line.split()[4] for line in audit_logger.read_recent(2)] == ["B" * 32, "C" * 32]


class TestRotation:
    """Tests for daily rotation and retention."""

    def test_stale_log_rotated_on_next_event(self, audit_logger):
        """Test yesterday's log is renamed before today's event is written."""
        audit_logger.log_event("agent", "STARTED", "DAEMON", "yesterday")
        backdate(audit_logger.log_path, 1)
        audit_logger._last_rotation_check = None

        audit_logger.log_event("agent", "STOPPED", "DAEMON", "today")

        [rotated] = rotated_logs(audit_logger)
        assert "yesterday" in rotated.read_text()
        assert "yesterday" not in audit_logger.log_path.read_text()
        assert oct(audit_logger.log_path.stat().st_mode)[-3:] == "600"

    def test_rotation_checked_hourly(self, audit_logger):
        """Test a recent check suppresses another rotation attempt."""
        audit_logger.log_event("agent", "STARTED", "DAEMON", "first")
        backdate(audit_logger.log_path, 1)

        audit_logger.log_event("agent", "STOPPED", "DAEMON", "second")

        assert rotated_logs(audit_logger) == []

    def test_retention(self, temp_vault_dir):
        """Test rotated logs past the retention period are deleted."""
        audit_logger = AuditLogger(temp_vault_dir / "access.log", retention_days=7)
        today = datetime.now(timezone.utc)
        expired = temp_vault_dir / f"access.log.{(today - timedelta(days=8)).strftime('%Y%m%d')}"
        kept = temp_vault_dir / f"access.log.{(today - timedelta(days=3)).strftime('%Y%m%d')}"
        unrelated = temp_vault_dir / "access.log.bak"
        for path in (expired, kept, unrelated):
            path.write_text("x")

        audit_logger._cleanup_old_logs()

        assert not expired.exists()
        assert kept.exists()
        assert unrelated.exists()
