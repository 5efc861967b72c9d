"""
Audit Logging Module.

This module records every converge, teardown and replace run by the engine,
successful or not, as append-only JSON lines.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from ..models import AuditRecord

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only logger for reconciliation events.

    Records are written to one JSONL file per UTC day inside ``audit_dir``.
    """

    def __init__(self, audit_dir: Union[str, Path] = "audit_logs"):
        """
        Initialize the audit logger.

        Args:
            audit_dir: Directory to store audit logs
        """
        self.audit_dir = Path(audit_dir)
        self.audit_dir.mkdir(parents=True, exist_ok=True)

    def log_event(self, record: AuditRecord) -> str:
        """
        Log an audit event.

        Args:
            record: The audit record to log

        Returns:
            The record ID
        """
        try:
            date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
            log_file = self.audit_dir / f"audit_{date_str}.jsonl"

            with open(log_file, "a", encoding="utf-8") as f:
                data = record.model_dump(mode="json")
                f.write(json.dumps(data) + "\n")

            logger.info(
                f"Logged audit event {record.id} ({record.operation.value} {record.integration_name}, "
                f"success={record.success})"
            )
            return record.id

        except OSError as e:
            logger.error(f"Failed to log audit event: {e}")
            raise

    def get_events(
        self,
        integration_name: Optional[str] = None,
        account_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """
        Retrieve audit events, most recent first.

        Args:
            integration_name: Filter by integration name
            account_id: Filter by target account
            limit: Maximum number of records to return

        Returns:
            List of matching AuditRecords
        """
        results: List[AuditRecord] = []

        for log_file in sorted(self.audit_dir.glob("audit_*.jsonl"), reverse=True):
            if len(results) >= limit:
                break

            with open(log_file, encoding="utf-8") as f:
                lines = f.readlines()

            for line in reversed(lines):
                if len(results) >= limit:
                    break
                if not line.strip():
                    continue

                try:
                    record = AuditRecord(**json.loads(line))
                except ValueError as e:
                    logger.warning(f"Skipping unreadable audit record in {log_file.name}: {e}")
                    continue

                if integration_name and record.integration_name != integration_name:
                    continue
                if account_id and record.account_id != account_id:
                    continue

                results.append(record)

        return results
