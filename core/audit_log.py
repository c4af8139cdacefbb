"""Attune — Command Audit Log

JSONL trail of every command the gate saw and what happened to it.

- Integrity chaining (each record includes hash of previous)
- File locking to prevent concurrent write corruption
- Log rotation (configurable max file size and retention count)
- Command output truncated before it reaches the log
"""

from __future__ import annotations
import hashlib
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

if os.name != "nt":
    import fcntl
else:
    import msvcrt

from models.models import AuthorizationDecision

logger = logging.getLogger("attune.audit_log")

DEFAULT_MAX_LOG_SIZE_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_MAX_LOG_FILES = 10
DEFAULT_MAX_OUTPUT_LENGTH = 2_000  # chars


class CommandAuditLog:
    def __init__(
        self,
        log_dir: str = "logs",
        max_log_size: int = DEFAULT_MAX_LOG_SIZE_BYTES,
        max_log_files: int = DEFAULT_MAX_LOG_FILES,
        max_output_length: int = DEFAULT_MAX_OUTPUT_LENGTH,
    ):
        self.log_dir = log_dir
        self.max_log_size = max_log_size
        self.max_log_files = max_log_files
        self.max_output_length = max_output_length
        self._lock = threading.Lock()
        self._last_hash: Optional[str] = None

        os.makedirs(self.log_dir, exist_ok=True)
        self.current_log_path = self._get_new_log_path()

    def _get_new_log_path(self) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        suffix = uuid.uuid4().hex[:8]
        return os.path.join(self.log_dir, f"commands_{timestamp}_{suffix}.jsonl")

    def record_decision(self, command: str, decision: AuthorizationDecision,
                        source: str) -> None:
        self._persist({
            "event": "authorization",
            "source": source,
            "command": command,
            "action": decision.action.value,
            "rejection": decision.rejection.value if decision.rejection else None,
            "reason": decision.reason,
        })

    def record_execution(self, command: str, exit_status: Optional[int],
                         stderr: str = "", error: Optional[str] = None) -> None:
        self._persist({
            "event": "execution",
            "command": command,
            "exit_status": exit_status,
            "stderr": self._truncate(stderr),
            "error": error,
        })

    def record_persist(self, base_command: str, value: str, persisted: bool,
                       error: Optional[str] = None) -> None:
        self._persist({
            "event": "persist",
            "base_command": base_command,
            "value": value,
            "persisted": persisted,
            "error": error,
        })

    def _truncate(self, text: str) -> str:
        if text and len(text) > self.max_output_length:
            return text[:self.max_output_length] + f"... [TRUNCATED, {len(text)} chars total]"
        return text

    def _compute_chain_hash(self, data_json: str) -> str:
        anchor = os.path.basename(self.current_log_path)
        chain_input = f"{anchor}:{self._last_hash or 'GENESIS'}:{data_json}"
        return hashlib.sha256(chain_input.encode('utf-8')).hexdigest()

    def _rotate_if_needed(self) -> None:
        try:
            if os.path.exists(self.current_log_path):
                if os.path.getsize(self.current_log_path) >= self.max_log_size:
                    self.current_log_path = self._get_new_log_path()
                    self._last_hash = None
                    self._cleanup_old_logs()
        except OSError:
            pass

    def _cleanup_old_logs(self) -> None:
        try:
            log_files = sorted(
                [f for f in os.listdir(self.log_dir)
                 if f.startswith("commands_") and f.endswith(".jsonl")],
                reverse=True,
            )
            for old_file in log_files[self.max_log_files:]:
                os.remove(os.path.join(self.log_dir, old_file))
                logger.info(f"Removed old audit log: {old_file}")
        except OSError as e:
            logger.error(f"Audit log cleanup error: {e}")

    def _persist(self, record: Dict[str, Any]) -> None:
        with self._lock:
            self._rotate_if_needed()

            record["record_id"] = str(uuid.uuid4())
            record["recorded_at"] = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(record, default=str)

            chain_hash = self._compute_chain_hash(data_json)
            record["_chain_hash"] = chain_hash
            self._last_hash = chain_hash
            final_json = json.dumps(record, default=str)

            try:
                with open(self.current_log_path, "a", encoding="utf-8") as f:
                    if os.name != "nt":
                        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    else:
                        f.seek(0)
                        msvcrt.locking(f.fileno(), msvcrt.LK_LOCK,
                                       max(len(final_json.encode("utf-8")) + 1, 1))
                        f.seek(0, os.SEEK_END)
                    try:
                        f.write(final_json + "\n")
                        f.flush()
                    finally:
                        if os.name != "nt":
                            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
                        else:
                            f.seek(0)
                            msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK,
                                           max(len(final_json.encode("utf-8")) + 1, 1))
            except OSError as e:
                logger.error(f"Failed to persist audit record {record['record_id']}: {e}")
