"""Builds AI request payloads from session state and retrieved context."""
import logging
from typing import Any, Dict, List, Mapping, Optional

from models.match import make_key, parse_key
from services.selection_state import SessionState

logger = logging.getLogger(__name__)


def format_rag_context(matches: List[Mapping[str, Any]]) -> str:
    """
    Format vector-search matches as a context block.

    Args:
        matches: Items with file_name, page_number, chunk_index, similarity, content

    Returns:
        Context block, or "" when there are no matches
    """
    if not matches:
        return ""

    lines = ["\n\n--- Relevant Document Context (via RAG Vector Search) ---"]
    for idx, match in enumerate(matches, start=1):
        relevance = float(match.get("similarity", 0.0)) * 100
        lines.append(
            f"\n{idx}. [File: {match.get('file_name')}, Page {match.get('page_number')}, "
            f"Chunk {match.get('chunk_index')}] (Relevance: {relevance:.1f}%)\n"
            f"{match.get('content', '')}"
        )
    lines.append("--- End RAG Context ---\n\n")
    return "\n".join(lines)


def format_diagnosis_context(session: SessionState, include_text: bool = True) -> str:
    """
    Format the session's diagnoses with the pages that support them.

    Pages are listed in document then page order under each diagnosis.
    """
    groups = session.diagnosis_groups()
    if not groups:
        return ""

    parts = [
        "\n\n--- Selected Diagnoses (Full Document Context) ---",
        "These documents have been explicitly selected for detailed analysis:\n",
    ]
    for diagnosis, keys in groups.items():
        parts.append(f"\nDiagnosis: {diagnosis}\nAssociated Pages:")
        for key in keys:
            document_index, page_number = parse_key(key)
            name = session.get_document(document_index).name
            parts.append(f"  - {name}, Page {page_number}")
            if include_text:
                text = session.get_page_text(key)
                if text:
                    parts.append(f"    Full Text: {text}")
    parts.append("--- End Direct Context ---\n\n")
    return "\n".join(parts)


def build_chat_messages(
    history: List[Mapping[str, str]],
    user_input: str,
    rag_context: str = "",
    diagnosis_context: str = ""
) -> List[Dict[str, str]]:
    """
    Build the ordered message list for a chat turn.

    Retrieved and attached context is prefixed to the new user message only;
    earlier turns are sent unchanged.
    """
    if not user_input.strip():
        raise ValueError("Message cannot be empty")

    messages = [{"role": m["role"], "content": m["content"]} for m in history]
    full_context = rag_context + diagnosis_context
    if full_context:
        logger.debug(
            f"Prefixing context: rag={len(rag_context)} chars, "
            f"diagnoses={len(diagnosis_context)} chars"
        )
    messages.append({"role": "user", "content": full_context + user_input})
    return messages


def build_pdf_content(session: SessionState, selected_only: bool = False) -> List[Dict[str, Any]]:
    """
    Page texts per document, as consumed by AI page analysis.

    Args:
        session: Session whose documents to include
        selected_only: Only include selected pages
    """
    snapshot = session.page_texts_snapshot()
    selected = session.selected_keys if selected_only else None
    content = []

    for document in list(session.documents):
        pages = []
        for page_number in sorted(snapshot.get(document.index, {})):
            if selected is not None and make_key(document.index, page_number) not in selected:
                continue
            pages.append({
                "pageNum": page_number,
                "text": snapshot[document.index][page_number].text,
            })
        if pages:
            content.append({
                "fileName": document.name,
                "fileIndex": document.index,
                "pages": pages,
            })
    return content


def build_selected_content(
    session: SessionState,
    images: Optional[Mapping[str, str]] = None
) -> List[Dict[str, Any]]:
    """
    Selected pages in output order with text, diagnosis and optional image.

    This is the hand-off for report generation and assessment services.
    """
    images = images or {}
    content = []
    for document_index, pages in session.selected_pages_grouped():
        name = session.get_document(document_index).name
        for page_number in pages:
            key = make_key(document_index, page_number)
            content.append({
                "fileName": name,
                "fileIndex": document_index,
                "pageNum": page_number,
                "text": session.get_page_text(key),
                "diagnosis": session.diagnoses.get(key),
                "image": images.get(key),
            })
    return content
