"""
In-memory registry of uploads.

In production this would be backed by a real store. For now uploads live
in a plain dict and are lost on restart -- the photos themselves are in
object storage, only the pipeline bookkeeping is transient.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from evidence.pipeline.orchestrator import UploadOrchestrator


@dataclass
class UploadRecord:
    orchestrator: UploadOrchestrator
    spool_path: Path


# upload_id -> UploadRecord
uploads: dict[str, UploadRecord] = {}


def in_flight_count() -> int:
    return sum(1 for r in uploads.values() if r.orchestrator.in_flight)
