#!/usr/bin/env python3
"""Audit Logger - Append-only log of vault and key agent events.

One line per event, rotated daily and pruned after a retention period.
Nothing secret is ever written: targets are vault paths, item uuids or
key identifiers.
"""

import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

ROTATION_CHECK_INTERVAL = 3600  # seconds


class AuditLogger:
    """Append-only event log with daily rotation."""

    def __init__(self, log_path: Path, retention_days: int = 30):
        """Initialize audit logger.

        Args:
            log_path: Path to the log file (e.g. ~/.agile-vault/access.log)
            retention_days: Number of days to keep rotated logs

        """
        self.log_path = Path(log_path)
        self.retention_days = retention_days
        self.lock = threading.Lock()
        self._last_rotation_check: Optional[datetime] = None

        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.parent.chmod(0o700)

        if not self.log_path.exists():
            fd = os.open(str(self.log_path), os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o600)
            os.close(fd)

    def log_event(
        self,
        actor: str,
        result: str,
        action: str,
        target: str,
        reason: Optional[str] = None
    ) -> None:
        """Append one event.

        Format: ISO8601Z [actor] RESULT ACTION target [reason]

        Args:
            actor: Component that performed the action ("vault", "agent")
            result: ALLOWED | DENIED | ERROR | STARTED | STOPPED
            action: CREATE | UNLOCK | LOCK | SAVE | CHANGE_PASSWORD | ...
            target: Vault path, item uuid or key id
            reason: Optional detail for DENIED/ERROR

        """
        self._check_rotation()

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        parts = [timestamp, f"[{actor}]", result, action, str(target) if target else "-"]
        if reason:
            # Keep one event per line
            parts.append(" ".join(str(reason).split()))

        with self.lock, open(self.log_path, "a") as f:
            f.write(" ".join(parts) + "\n")

    def _check_rotation(self) -> None:
        now = datetime.now(timezone.utc)
        if self._last_rotation_check and (now - self._last_rotation_check).total_seconds() < ROTATION_CHECK_INTERVAL:
            return
        self._last_rotation_check = now

        try:
            mtime = datetime.fromtimestamp(self.log_path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            return

        if mtime < now.replace(hour=0, minute=0, second=0, microsecond=0):
            self._rotate(mtime)
            self._cleanup_old_logs()

    def _rotate(self, mtime: datetime) -> None:
        rotated_path = self.log_path.with_name(f"{self.log_path.name}.{mtime.strftime('%Y%m%d')}")
        if rotated_path.exists():
            return
        try:
            self.log_path.rename(rotated_path)
        except OSError:
            return
        fd = os.open(str(self.log_path), os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o600)
        os.close(fd)

    def _cleanup_old_logs(self) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.retention_days)
        for log_file in self.log_path.parent.glob(f"{self.log_path.name}.*"):
            try:
                log_date = datetime.strptime(log_file.suffix[1:], "%Y%m%d").replace(tzinfo=timezone.utc)
            except ValueError:
                continue
            if log_date < cutoff:
                log_file.unlink(missing_ok=True)

    def read_recent(self, lines: int = 100) -> List[str]:
        """Return up to ``lines`` most recent entries, oldest first."""
        try:
            with open(self.log_path) as f:
                return f.readlines()[-lines:]
        except OSError:
            return []
