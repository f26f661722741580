"""Document data models."""
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class TextFragment:
    """A positioned piece of a page's text layer."""
    text: str
    x: float
    y: float


@dataclass(frozen=True)
class PageText:
    """Extracted text for one page of one loaded document."""
    document_index: int
    page_number: int  # 1-indexed
    text: str
    ocr_applied: bool = False


@dataclass
class DocumentHandle:
    """Represents one loaded PDF in the current document set."""
    index: int
    name: str
    data: bytes = field(repr=False)
    page_count: Optional[int] = None
    file_id: Optional[str] = None  # workspace_files row id, when persisted
    file_path: Optional[str] = None  # storage object path, when persisted
    error: Optional[str] = None

    def resolve_page_count(self, page_count: int) -> None:
        """Record the page count once the file has been parsed."""
        if self.page_count is not None and self.page_count != page_count:
            raise ValueError(
                f"Page count of {self.name} already resolved to {self.page_count}"
            )
        self.page_count = page_count

    def has_page(self, page_number: int) -> bool:
        return self.page_count is not None and 1 <= page_number <= self.page_count
