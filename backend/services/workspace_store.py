"""Workspace persistence using Supabase storage, tables and edge functions."""
import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from supabase import create_client, Client

from config import SUPABASE_URL, SUPABASE_KEY, STORAGE_BUCKET
from models.diagnosis import DiagnosisPage, WorkspaceDiagnosis
from models.document import PageText
from models.match import SearchCategory

logger = logging.getLogger(__name__)


class WorkspaceStoreError(RuntimeError):
    """Raised when a storage or database operation fails."""


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class WorkspaceStore:
    """Persist workspace files, page text, diagnoses and search categories."""

    def __init__(
        self,
        supabase_url: str = SUPABASE_URL,
        supabase_key: str = SUPABASE_KEY,
        bucket: str = STORAGE_BUCKET,
        client: Optional[Client] = None
    ):
        """
        Initialize the store with a Supabase client.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase API key
            bucket: Storage bucket holding uploaded PDFs
            client: Pre-built client (skips credential checks)

        Raises:
            ValueError: If Supabase credentials are missing
        """
        if client is None:
            if not supabase_url or not supabase_key:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")
            client = create_client(supabase_url, supabase_key)

        self.client: Client = client
        self.bucket = bucket
        logger.info(f"Initialized WorkspaceStore with bucket: {bucket}")

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upload_document(
        self,
        user_id: str,
        workspace_id: str,
        file_name: str,
        data: bytes,
        page_count: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Upload a PDF and register it in the workspace.

        The object path is ``{user_id}/{workspace_id}/{millis}-{file_name}``.

        Returns:
            The inserted workspace_files row

        Raises:
            WorkspaceStoreError: If the upload or the insert fails
        """
        file_path = f"{user_id}/{workspace_id}/{int(time.time() * 1000)}-{file_name}"

        try:
            self.client.storage.from_(self.bucket).upload(
                file_path, data, {"content-type": "application/pdf"}
            )
            response = self.client.table("workspace_files").insert({
                "workspace_id": workspace_id,
                "file_name": file_name,
                "file_path": file_path,
                "file_size": len(data),
                "page_count": page_count,
                "uploaded_by": user_id,
            }).execute()
        except Exception as e:
            error_msg = f"Failed to upload {file_name}: {str(e)}"
            logger.error(error_msg)
            raise WorkspaceStoreError(error_msg) from e

        row = response.data[0] if response.data else {}
        logger.info(f"Uploaded {file_name} to {file_path}")
        return row

    def download_document(self, file_path: str) -> bytes:
        try:
            return self.client.storage.from_(self.bucket).download(file_path)
        except Exception as e:
            error_msg = f"Failed to download {file_path}: {str(e)}"
            logger.error(error_msg)
            raise WorkspaceStoreError(error_msg) from e

    def delete_document(self, file_id: str, file_path: str) -> None:
        """Remove the stored object first, then its workspace_files row."""
        try:
            self.client.storage.from_(self.bucket).remove([file_path])
            self.client.table("workspace_files").delete().eq("id", file_id).execute()
        except Exception as e:
            error_msg = f"Failed to delete {file_path}: {str(e)}"
            logger.error(error_msg)
            raise WorkspaceStoreError(error_msg) from e
        logger.info(f"Deleted workspace file {file_id}")

    def list_files(self, workspace_id: str) -> List[Dict[str, Any]]:
        try:
            response = (
                self.client.table("workspace_files")
                .select("*")
                .eq("workspace_id", workspace_id)
                .order("created_at")
                .execute()
            )
        except Exception as e:
            error_msg = f"Failed to list files for workspace {workspace_id}: {str(e)}"
            logger.error(error_msg)
            raise WorkspaceStoreError(error_msg) from e
        return response.data or []

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def save_page_texts(self, file_id: str, records: Iterable[PageText]) -> int:
        """
        Upsert extracted text into file_pages, one row per page.

        Returns:
            Number of rows written
        """
        rows = [
            {
                "file_id": file_id,
                "page_number": record.page_number,
                "extracted_text": record.text,
                "ocr_completed": record.ocr_applied,
            }
            for record in records
        ]
        if not rows:
            return 0

        try:
            self.client.table("file_pages").upsert(rows, on_conflict="file_id,page_number").execute()
        except Exception as e:
            error_msg = f"Failed to save page text for file {file_id}: {str(e)}"
            logger.error(error_msg)
            raise WorkspaceStoreError(error_msg) from e

        logger.debug(f"Saved {len(rows)} page(s) for file {file_id}")
        return len(rows)

    def _page_id(self, file_id: str, page_number: int) -> str:
        pages = self.client.table("file_pages")
        response = (
            pages.select("id")
            .eq("file_id", file_id)
            .eq("page_number", page_number)
            .execute()
        )
        if response.data:
            return response.data[0]["id"]

        response = pages.insert({"file_id": file_id, "page_number": page_number}).execute()
        return response.data[0]["id"]

    def save_page_diagnosis(
        self,
        file_id: str,
        page_number: int,
        diagnosis_text: str,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Attach diagnosis text to a stored page, creating the page row if needed."""
        try:
            page_id = self._page_id(file_id, page_number)
            response = self.client.table("page_diagnoses").insert({
                "page_id": page_id,
                "diagnosis_text": diagnosis_text,
                "created_by": user_id,
            }).execute()
        except Exception as e:
            error_msg = f"Failed to save diagnosis for {file_id} page {page_number}: {str(e)}"
            logger.error(error_msg)
            raise WorkspaceStoreError(error_msg) from e
        return response.data[0] if response.data else {}

    # ------------------------------------------------------------------
    # Workspace diagnoses
    # ------------------------------------------------------------------

    @staticmethod
    def _to_diagnosis(row: Dict[str, Any]) -> WorkspaceDiagnosis:
        return WorkspaceDiagnosis(
            id=row["id"],
            workspace_id=row["workspace_id"],
            diagnosis_name=row["diagnosis_name"],
            pages=[DiagnosisPage.from_row(page) for page in row.get("pages") or []],
            created_at=_parse_timestamp(row.get("created_at")),
        )

    def save_diagnosis(
        self,
        workspace_id: str,
        diagnosis_name: str,
        pages: List[DiagnosisPage],
        user_id: Optional[str] = None
    ) -> WorkspaceDiagnosis:
        """
        Save a diagnosis over a set of pages.

        When the workspace already has a diagnosis with the same name, the new
        pages are merged into it by page key instead of replacing its pages.

        Returns:
            The stored diagnosis
        """
        table = self.client.table("workspace_diagnoses")

        try:
            existing = (
                table.select("*")
                .eq("workspace_id", workspace_id)
                .eq("diagnosis_name", diagnosis_name)
                .execute()
            )

            if existing.data:
                current = self._to_diagnosis(existing.data[0])
                merged = {page.key: page for page in current.pages}
                for page in pages:
                    merged.setdefault(page.key, page)
                rows = [page.to_row() for page in merged.values()]
                response = (
                    table.update({"pages": rows, "page_count": len(rows)})
                    .eq("id", current.id)
                    .execute()
                )
                logger.info(
                    f"Merged {len(rows) - current.page_count} page(s) into diagnosis {diagnosis_name!r}"
                )
            else:
                rows = [page.to_row() for page in pages]
                response = table.insert({
                    "workspace_id": workspace_id,
                    "diagnosis_name": diagnosis_name,
                    "pages": rows,
                    "page_count": len(rows),
                    "created_by": user_id,
                }).execute()
                logger.info(f"Created diagnosis {diagnosis_name!r} with {len(rows)} page(s)")
        except Exception as e:
            error_msg = f"Failed to save diagnosis {diagnosis_name!r}: {str(e)}"
            logger.error(error_msg)
            raise WorkspaceStoreError(error_msg) from e

        return self._to_diagnosis(response.data[0])

    def list_diagnoses(self, workspace_id: str) -> List[WorkspaceDiagnosis]:
        try:
            response = (
                self.client.table("workspace_diagnoses")
                .select("*")
                .eq("workspace_id", workspace_id)
                .order("created_at", desc=True)
                .execute()
            )
        except Exception as e:
            error_msg = f"Failed to list diagnoses for workspace {workspace_id}: {str(e)}"
            logger.error(error_msg)
            raise WorkspaceStoreError(error_msg) from e
        return [self._to_diagnosis(row) for row in response.data or []]

    def delete_diagnosis(self, diagnosis_id: str) -> None:
        try:
            self.client.table("workspace_diagnoses").delete().eq("id", diagnosis_id).execute()
        except Exception as e:
            error_msg = f"Failed to delete diagnosis {diagnosis_id}: {str(e)}"
            logger.error(error_msg)
            raise WorkspaceStoreError(error_msg) from e

    # ------------------------------------------------------------------
    # Search categories
    # ------------------------------------------------------------------

    def load_search_categories(self) -> List[SearchCategory]:
        """Stored categories, unchecked; an unreachable store yields []."""
        try:
            response = self.client.table("search_categories").select("*").order("id").execute()
        except Exception as e:
            logger.warning(f"Could not load search categories: {e}")
            return []
        return [
            SearchCategory(id=int(row["id"]), label=row["label"], terms=row.get("terms") or "")
            for row in response.data or []
        ]

    def save_search_categories(self, categories: Iterable[SearchCategory]) -> None:
        rows = [{"id": c.id, "label": c.label, "terms": c.terms} for c in categories]
        if not rows:
            return
        try:
            self.client.table("search_categories").upsert(rows).execute()
        except Exception as e:
            error_msg = f"Failed to save search categories: {str(e)}"
            logger.error(error_msg)
            raise WorkspaceStoreError(error_msg) from e

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def rag_search(self, query: str, file_ids: List[str], limit: int = 10) -> List[Dict[str, Any]]:
        """
        Vector search over stored page chunks via the rag-search edge function.

        Returns:
            Matches with file_name, page_number, chunk_index, similarity and
            content; an empty list when the call fails
        """
        if not query.strip() or not file_ids:
            return []

        try:
            response = self.client.functions.invoke(
                "rag-search",
                invoke_options={
                    "body": {"query": query, "fileIds": file_ids, "limit": limit},
                    "responseType": "json",
                }
            )
            if isinstance(response, (bytes, str)):
                response = json.loads(response)
        except Exception as e:
            logger.error(f"RAG search failed, continuing without retrieved context: {e}")
            return []

        matches = (response or {}).get("matches") or []
        logger.info(f"RAG search returned {len(matches)} match(es)")
        return matches
