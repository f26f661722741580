"""Data models for the page triage backend."""
from .document import DocumentHandle, PageText, TextFragment
from .match import MatchRecord, SearchCategory, SearchMode, SelectionSource, make_key, parse_key
from .diagnosis import DiagnosisPage, WorkspaceDiagnosis

__all__ = [
    "DocumentHandle",
    "PageText",
    "TextFragment",
    "MatchRecord",
    "SearchCategory",
    "SearchMode",
    "SelectionSource",
    "make_key",
    "parse_key",
    "DiagnosisPage",
    "WorkspaceDiagnosis",
]
