"""Diagnosis data models."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class DiagnosisPage:
    """A page a workspace diagnosis points at."""
    file_id: str
    file_name: str
    page_num: int
    key: str

    def to_row(self) -> dict:
        return {
            "fileId": self.file_id,
            "fileName": self.file_name,
            "pageNum": self.page_num,
            "key": self.key,
        }

    @classmethod
    def from_row(cls, row: dict) -> "DiagnosisPage":
        return cls(
            file_id=row["fileId"],
            file_name=row["fileName"],
            page_num=int(row["pageNum"]),
            key=row["key"],
        )


@dataclass
class WorkspaceDiagnosis:
    """A diagnosis name grouped over the pages that support it."""
    id: str
    workspace_id: str
    diagnosis_name: str
    pages: List[DiagnosisPage] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @property
    def page_count(self) -> int:
        return len(self.pages)
