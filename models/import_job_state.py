from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional
from datetime import datetime


class ImportJobStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Forward order of the happy path; FAILED is reachable from any non-terminal state
STATUS_ORDER = [
    ImportJobStatus.PENDING,
    ImportJobStatus.DOWNLOADING,
    ImportJobStatus.PROCESSING,
    ImportJobStatus.COMPLETED,
]

TERMINAL_STATUSES = frozenset({ImportJobStatus.COMPLETED, ImportJobStatus.FAILED})


def can_transition(current: ImportJobStatus, requested: ImportJobStatus) -> bool:
    if current in TERMINAL_STATUSES:
        return False
    if requested == ImportJobStatus.FAILED:
        return True
    return STATUS_ORDER.index(requested) > STATUS_ORDER.index(current)


@dataclass
class ImportJob:
    id: str
    source: str
    file_name: str
    status: ImportJobStatus = ImportJobStatus.PENDING
    metadata: dict = field(default_factory=dict)
    file_path: Optional[str] = None
    error: Optional[str] = None
    imported_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def update(self, status, file_path=None, error=None):
        self.status = ImportJobStatus(status)
        if file_path is not None:
            self.file_path = file_path
        if error is not None:
            self.error = error
        self.updated_at = datetime.utcnow()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["imported_at"] = self.imported_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data
