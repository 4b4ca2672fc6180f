"""crm_import.committer

Submit the deduplicated batch in one create_many call. A failed call is
reported verbatim and never as a partial count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from crm_import.projector import CandidateRecord
from crm_import.store import RecordStore

log = logging.getLogger(__name__)


@dataclass
class CommitResult:
    success: bool
    created_count: int | None = None
    created_records: list[dict[str, Any]] = field(default_factory=list)
    message: str = ""


def commit_batch(
    store: RecordStore,
    entity_type: str,
    to_create: list[CandidateRecord],
) -> CommitResult:
    try:
        created = store.create_many(entity_type, list(to_create))
    except Exception as exc:
        log.error("bulk create of %d %s record(s) failed: %s", len(to_create), entity_type, exc)
        return CommitResult(success=False, message=str(exc))
    return CommitResult(
        success=True,
        created_count=len(created),
        created_records=list(created),
        message=f"{len(created)} {entity_type} record(s) created",
    )
