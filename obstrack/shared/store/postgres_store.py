"""PostgreSQL-backed document store.

All documents share one table with a JSONB body:
- merge writes use `data || EXCLUDED.data` (top-level field merge)
- create-if-absent uses `ON CONFLICT DO NOTHING`
- compare-and-merge filters on `data->>field` and reports the row it hit

The table itself is created by ConnectionManager.initialize().

Listeners registered in this process are notified after each write.
Writes made by other processes reach them on their next own write or
re-subscription.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from obstrack.shared.errors import StoreError
from .connection import ConnectionManager
from .document_store import (
    Document,
    DocumentStore,
    doc_id_of,
    normalize_path,
    parent_collection,
)

logger = logging.getLogger(__name__)


class PostgresDocumentStore(DocumentStore):
    """Document store over a single PostgreSQL table."""

    def __init__(self, connection_manager: ConnectionManager):
        """Initialize store.

        Args:
            connection_manager: Pool bound to the documents table
        """
        super().__init__()
        self.connection_manager = connection_manager
        self.table_name = connection_manager.table_name

        logger.info(
            "POSTGRES_STORE_INITIALIZED",
            extra={"table_name": self.table_name}
        )

    def get_doc(self, path: str) -> Optional[Document]:
        path = normalize_path(path)
        row = self._execute(
            f"SELECT data FROM {self.table_name} WHERE path = %s",
            (path,),
            operation="get_doc",
            fetch="one",
        )
        if row is None:
            return None
        return Document(path=path, data=self._load(row[0]))

    def set_doc(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        path = normalize_path(path)
        update = (
            f"data = {self.table_name}.data || EXCLUDED.data"
            if merge else "data = EXCLUDED.data"
        )
        query = f"""
            INSERT INTO {self.table_name} (path, collection, doc_id, data)
            VALUES (%s, %s, %s, %s::jsonb)
            ON CONFLICT (path) DO UPDATE SET {update}, updated_at = now()
        """
        self._execute(
            query,
            (path, parent_collection(path), doc_id_of(path), json.dumps(data)),
            operation="set_doc",
            commit=True,
        )
        logger.debug(
            "POSTGRES_STORE_WRITE",
            extra={"path": path, "merge": merge, "fields": sorted(data)}
        )
        self._notify_write(path)

    def create_doc(self, path: str, data: Dict[str, Any]) -> bool:
        path = normalize_path(path)
        query = f"""
            INSERT INTO {self.table_name} (path, collection, doc_id, data)
            VALUES (%s, %s, %s, %s::jsonb)
            ON CONFLICT (path) DO NOTHING
            RETURNING path
        """
        row = self._execute(
            query,
            (path, parent_collection(path), doc_id_of(path), json.dumps(data)),
            operation="create_doc",
            fetch="one",
            commit=True,
        )
        if row is None:
            return False
        self._notify_write(path)
        return True

    def update_if(
        self,
        path: str,
        field: str,
        expected: str,
        data: Dict[str, Any],
    ) -> bool:
        path = normalize_path(path)
        query = f"""
            UPDATE {self.table_name}
            SET data = data || %s::jsonb, updated_at = now()
            WHERE path = %s AND data->>%s = %s
            RETURNING path
        """
        row = self._execute(
            query,
            (json.dumps(data), path, field, expected),
            operation="update_if",
            fetch="one",
            commit=True,
        )
        if row is None:
            return False
        self._notify_write(path)
        return True

    def list_docs(self, collection_path: str) -> List[Document]:
        collection_path = normalize_path(collection_path)
        rows = self._execute(
            f"SELECT path, data FROM {self.table_name} WHERE collection = %s",
            (collection_path,),
            operation="list_docs",
            fetch="all",
        )
        return [Document(path=row[0], data=self._load(row[1])) for row in rows or []]

    def _execute(
        self,
        query: str,
        params: tuple,
        operation: str,
        fetch: Optional[str] = None,
        commit: bool = False,
    ):
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    result = None
                    if fetch == "one":
                        result = cur.fetchone()
                    elif fetch == "all":
                        result = cur.fetchall()
                    if commit:
                        conn.commit()
                    return result
        except Exception as e:
            logger.error(
                "POSTGRES_STORE_FAILED",
                extra={"operation": operation, "error": str(e)}
            )
            raise StoreError(f"Failed to {operation}: {e}")

    @staticmethod
    def _load(value: Any) -> Dict[str, Any]:
        # psycopg2 decodes jsonb to dict; plain json columns arrive as text
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return dict(value)
