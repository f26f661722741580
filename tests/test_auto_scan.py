"""Unit tests for DiagnosisScanner."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import time

import fitz
import pytest
from unittest.mock import Mock
from services.auto_scan import DiagnosisScanner
from services.cancellation import CancellationToken
from services.llm_client import LLMClientError, LLMError
from services.selection_state import SessionState
from services.text_extractor import TextExtractor


def make_pdf(pages):
    doc = fitz.open()
    for text in pages:
        doc.new_page().insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def session():
    state = SessionState()
    texts = ["Lumbar MRI", "Physical therapy", "Follow-up visit"]
    handle = state.add_document("records.pdf", make_pdf(texts))
    handle.resolve_page_count(len(texts))
    for key in ["0-1", "0-2", "0-3"]:
        state.toggle_selection(key)
    return state


@pytest.fixture
def llm_client():
    return Mock()


@pytest.fixture
def scanner(llm_client):
    return DiagnosisScanner(llm_client, TextExtractor(ocr_engine=Mock()), page_timeout=5)


class TestDiagnosisScanner:
    """Test suite for DiagnosisScanner."""

    @pytest.mark.asyncio
    async def test_scans_selected_pages_in_order(self, scanner, llm_client, session):
        llm_client.suggest_diagnosis.side_effect = lambda image, text, name, page: f"Dx {page}"

        result = await scanner.scan(session)

        assert result.processed == 3
        assert result.succeeded == 3
        assert result.failed == 0
        assert result.cancelled is False
        assert session.diagnoses == {"0-1": "Dx 1", "0-2": "Dx 2", "0-3": "Dx 3"}
        pages = [c.args[3] for c in llm_client.suggest_diagnosis.call_args_list]
        assert pages == [1, 2, 3]
        image = llm_client.suggest_diagnosis.call_args_list[0].args[0]
        assert image.startswith("data:image/jpeg;base64,")

    @pytest.mark.asyncio
    async def test_failures_are_tallied_and_scan_continues(self, scanner, llm_client, session):
        quota = LLMClientError(LLMError("QUOTA_EXHAUSTED", "AI credits exhausted. Please add credits.", {}))
        llm_client.suggest_diagnosis.side_effect = ["Sciatica", quota, RuntimeError("bad page")]

        result = await scanner.scan(session)

        assert result.processed == 3
        assert result.succeeded == 1
        assert result.failed == 2
        assert result.failures == {"0-2": "QUOTA_EXHAUSTED", "0-3": "RuntimeError"}
        assert session.diagnoses == {"0-1": "Sciatica"}

    @pytest.mark.asyncio
    async def test_slow_page_times_out(self, llm_client, session):
        scanner = DiagnosisScanner(llm_client, TextExtractor(ocr_engine=Mock()), page_timeout=0.05)

        def slow_then_fast(image, text, name, page):
            if page == 1:
                time.sleep(0.3)
            return "Dx"

        llm_client.suggest_diagnosis.side_effect = slow_then_fast

        result = await scanner.scan(session)

        assert result.failures == {"0-1": "TIMEOUT_ERROR"}
        assert result.succeeded == 2
        assert "0-1" not in session.diagnoses

    @pytest.mark.asyncio
    async def test_stop_keeps_committed_pages(self, scanner, llm_client, session):
        token = CancellationToken()

        def diagnose_then_stop(image, text, name, page):
            token.cancel()
            return "Lumbar strain"

        llm_client.suggest_diagnosis.side_effect = diagnose_then_stop

        result = await scanner.scan(session, cancel_token=token)

        assert result.cancelled is True
        assert result.processed == 1
        assert session.diagnoses == {"0-1": "Lumbar strain"}
        assert llm_client.suggest_diagnosis.call_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, scanner, llm_client, session):
        token = CancellationToken()
        token.cancel()

        result = await scanner.scan(session, cancel_token=token)

        assert result.processed == 0
        assert result.cancelled is True
        llm_client.suggest_diagnosis.assert_not_called()

    @pytest.mark.asyncio
    async def test_explicit_keys_and_progress(self, scanner, llm_client, session):
        llm_client.suggest_diagnosis.return_value = "Dx"
        progress = []

        result = await scanner.scan(
            session, keys=["0-3", "0-1"], on_progress=lambda r: progress.append(r.processed)
        )

        assert result.total == 2
        assert progress == [1, 2]
        assert set(session.diagnoses) == {"0-1", "0-3"}

    @pytest.mark.asyncio
    async def test_removed_document_is_not_written(self, scanner, llm_client, session):
        def remove_during_call(image, text, name, page):
            session.remove_all_documents()
            return "Dx"

        llm_client.suggest_diagnosis.side_effect = remove_during_call

        result = await scanner.scan(session, keys=["0-1"])

        assert result.failures == {"0-1": "DOCUMENT_REMOVED"}
        assert session.diagnoses == {}

    @pytest.mark.asyncio
    async def test_earlier_document_removed_mid_scan(self, scanner, llm_client):
        state = SessionState()
        for name in ["a.pdf", "b.pdf", "c.pdf"]:
            handle = state.add_document(name, make_pdf([f"{name} one", f"{name} two"]))
            handle.resolve_page_count(2)
        calls = []

        def remove_first_document(image, text, name, page):
            if not calls:
                state.remove_document(0)
            calls.append((name, page))
            return f"Dx {name} {page}"

        llm_client.suggest_diagnosis.side_effect = remove_first_document

        result = await scanner.scan(state, keys=["1-1", "1-2"])

        assert calls == [("b.pdf", 1), ("b.pdf", 2)]
        assert result.succeeded == 2
        assert result.failures == {}
        # b.pdf now sits at index 0; c.pdf moved into index 1 and gets nothing
        assert state.diagnoses == {"0-1": "Dx b.pdf 1", "0-2": "Dx b.pdf 2"}

    @pytest.mark.asyncio
    async def test_remaining_pages_of_removed_document_are_skipped(self, scanner, llm_client):
        state = SessionState()
        for name in ["a.pdf", "b.pdf"]:
            handle = state.add_document(name, make_pdf([f"{name} one", f"{name} two"]))
            handle.resolve_page_count(2)

        def remove_own_document(image, text, name, page):
            state.remove_document(0)
            return "Dx"

        llm_client.suggest_diagnosis.side_effect = remove_own_document

        result = await scanner.scan(state, keys=["0-1", "0-2"])

        assert llm_client.suggest_diagnosis.call_count == 1
        assert result.failures == {"0-1": "DOCUMENT_REMOVED", "0-2": "DOCUMENT_REMOVED"}
        assert state.diagnoses == {}

    @pytest.mark.asyncio
    async def test_committed_diagnoses_are_reported(self, llm_client, session):
        persisted = []
        scanner = DiagnosisScanner(
            llm_client,
            TextExtractor(ocr_engine=Mock()),
            page_timeout=5,
            on_diagnosis=lambda handle, page, text: persisted.append((handle.name, page, text))
        )
        llm_client.suggest_diagnosis.side_effect = ["Sciatica", "", RuntimeError("bad page")]

        await scanner.scan(session)

        assert persisted == [("records.pdf", 1, "Sciatica")]
