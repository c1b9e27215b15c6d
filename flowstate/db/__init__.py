from .archive_db import ArchiveDB
from .models import ArchivedWorkflowRow

__all__ = [
    "ArchiveDB",
    "ArchivedWorkflowRow",
]
