"""Unit tests for WorkspaceStore."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from unittest.mock import MagicMock, Mock, patch
from models.diagnosis import DiagnosisPage
from models.document import PageText
from models.match import SearchCategory
from services.workspace_store import WorkspaceStore, WorkspaceStoreError


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def store(client):
    return WorkspaceStore(client=client)


def page(key, file_id="f1", name="a.pdf"):
    return DiagnosisPage(file_id=file_id, file_name=name, page_num=int(key.split("-")[1]), key=key)


class TestWorkspaceStore:
    """Test suite for WorkspaceStore."""

    @patch('services.workspace_store.create_client')
    def test_initialization_success(self, mock_create_client):
        WorkspaceStore(supabase_url="https://test.supabase.co", supabase_key="test_key")
        mock_create_client.assert_called_once_with("https://test.supabase.co", "test_key")

    def test_initialization_without_credentials(self):
        with pytest.raises(ValueError, match="SUPABASE_URL and SUPABASE_KEY"):
            WorkspaceStore(supabase_url=None, supabase_key=None)

    def test_upload_document(self, store, client):
        client.table.return_value.insert.return_value.execute.return_value = Mock(
            data=[{"id": "f1", "file_path": "u1/w1/1-a.pdf"}]
        )

        row = store.upload_document("u1", "w1", "a.pdf", b"%PDF", page_count=3)

        assert row["id"] == "f1"
        bucket = client.storage.from_.return_value
        path = bucket.upload.call_args.args[0]
        assert path.startswith("u1/w1/") and path.endswith("-a.pdf")
        client.storage.from_.assert_called_with("pdf-files")
        inserted = client.table.return_value.insert.call_args.args[0]
        assert inserted["file_path"] == path
        assert inserted["file_size"] == 4
        assert inserted["page_count"] == 3

    def test_upload_failure(self, store, client):
        client.storage.from_.return_value.upload.side_effect = RuntimeError("bucket missing")

        with pytest.raises(WorkspaceStoreError, match="Failed to upload"):
            store.upload_document("u1", "w1", "a.pdf", b"%PDF")

    def test_save_page_texts_upserts_by_page(self, store, client):
        count = store.save_page_texts("f1", [
            PageText(document_index=0, page_number=1, text="one"),
            PageText(document_index=0, page_number=2, text="two", ocr_applied=True),
        ])

        assert count == 2
        upsert = client.table.return_value.upsert
        rows = upsert.call_args.args[0]
        assert rows[1] == {"file_id": "f1", "page_number": 2, "extracted_text": "two", "ocr_completed": True}
        assert upsert.call_args.kwargs["on_conflict"] == "file_id,page_number"

    def test_save_page_texts_nothing_to_do(self, store, client):
        assert store.save_page_texts("f1", []) == 0
        client.table.assert_not_called()

    def test_save_diagnosis_creates_new(self, store, client):
        table = client.table.return_value
        table.select.return_value.eq.return_value.eq.return_value.execute.return_value = Mock(data=[])
        table.insert.return_value.execute.return_value = Mock(data=[{
            "id": "d1", "workspace_id": "w1", "diagnosis_name": "Sciatica",
            "pages": [page("0-1").to_row()], "created_at": "2024-01-02T03:04:05Z",
        }])

        diagnosis = store.save_diagnosis("w1", "Sciatica", [page("0-1")])

        assert diagnosis.page_count == 1
        assert diagnosis.created_at.year == 2024
        assert table.insert.call_args.args[0]["page_count"] == 1

    def test_save_diagnosis_merges_pages_by_key(self, store, client):
        table = client.table.return_value
        table.select.return_value.eq.return_value.eq.return_value.execute.return_value = Mock(data=[{
            "id": "d1", "workspace_id": "w1", "diagnosis_name": "Sciatica",
            "pages": [page("0-1").to_row(), page("0-2").to_row()],
        }])
        table.update.return_value.eq.return_value.execute.return_value = Mock(data=[{
            "id": "d1", "workspace_id": "w1", "diagnosis_name": "Sciatica",
            "pages": [page(k).to_row() for k in ["0-1", "0-2", "1-1"]],
        }])

        store.save_diagnosis("w1", "Sciatica", [page("0-2"), page("1-1", file_id="f2")])

        update = table.update.call_args.args[0]
        assert [p["key"] for p in update["pages"]] == ["0-1", "0-2", "1-1"]
        assert update["page_count"] == 3
        table.insert.assert_not_called()

    def test_load_search_categories(self, store, client):
        client.table.return_value.select.return_value.order.return_value.execute.return_value = Mock(
            data=[{"id": 1, "label": "Lumbar", "terms": "L4, L5"}]
        )

        assert store.load_search_categories() == [SearchCategory(id=1, label="Lumbar", terms="L4, L5")]

    def test_load_search_categories_failure(self, store, client):
        client.table.side_effect = RuntimeError("offline")
        assert store.load_search_categories() == []

    def test_rag_search(self, store, client):
        client.functions.invoke.return_value = {"matches": [{"file_name": "a.pdf", "page_number": 1}]}

        matches = store.rag_search("disc bulge", ["f1", "f2"])

        assert matches == [{"file_name": "a.pdf", "page_number": 1}]
        args, kwargs = client.functions.invoke.call_args
        assert args[0] == "rag-search"
        assert kwargs["invoke_options"]["body"] == {"query": "disc bulge", "fileIds": ["f1", "f2"], "limit": 10}

    def test_rag_search_failure_returns_empty(self, store, client):
        client.functions.invoke.side_effect = RuntimeError("function not deployed")
        assert store.rag_search("disc bulge", ["f1"]) == []

    def test_rag_search_without_files(self, store, client):
        assert store.rag_search("disc bulge", []) == []
        client.functions.invoke.assert_not_called()
