"""
Audit Logging Module.

This module records every remote mutation the reconciler attempts, so a
run can be reviewed after the fact.
"""

import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from ..models import AuditRecord

logger = logging.getLogger(__name__)

FILE_PREFIX = "audit_"


class AuditLogger:
    """
    Append-only logger for reconciliation actions.

    Records are written as JSON lines to one file per UTC day. They are
    never read back to make reconciliation decisions.
    """

    def __init__(self, audit_dir: str = "audit"):
        self.audit_dir = Path(audit_dir)
        self.audit_dir.mkdir(parents=True, exist_ok=True)

    def _file_for(self, day: date) -> Path:
        return self.audit_dir / f"{FILE_PREFIX}{day.isoformat()}.jsonl"

    def log_event(self, record: AuditRecord) -> str:
        """
        Append a record to today's file.

        Returns:
            The record ID

        Raises:
            OSError: if the audit file cannot be written
        """
        path = self._file_for(datetime.now(timezone.utc).date())
        line = json.dumps(record.model_dump(mode="json"), sort_keys=True)
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.error(f"Cannot write audit record {record.id} to {path}: {e}")
            raise

        logger.debug(f"Audited {record.action} {record.resource} ({'ok' if record.success else 'failed'})")
        return record.id

    def _records(self) -> Iterator[AuditRecord]:
        """Yield stored records, newest file and newest line first."""
        for path in sorted(self.audit_dir.glob(f"{FILE_PREFIX}*.jsonl"), reverse=True):
            lines = path.read_text(encoding="utf-8").splitlines()
            for number, line in reversed(list(enumerate(lines, 1))):
                if not line.strip():
                    continue
                try:
                    yield AuditRecord(**json.loads(line))
                except ValueError as e:
                    logger.warning(f"Skipping unreadable audit record {path.name}:{number}: {e}")

    def get_events(self, account: Optional[str] = None, role: Optional[str] = None,
                   limit: int = 100) -> List[AuditRecord]:
        """
        Retrieve audit events, most recent first.

        Args:
            account: Only records for this account name
            role: Only records for this role name
            limit: Maximum number of records to return
        """
        results = []
        for record in self._records():
            if len(results) >= limit:
                break
            if account and record.account != account:
                continue
            if role and record.role != role:
                continue
            results.append(record)
        return results
