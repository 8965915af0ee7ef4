"""In-process document store for development and tests."""
import copy
import logging
import threading
from typing import Any, Dict, List, Optional

from obstrack.shared.errors import StoreError
from .document_store import (
    Document,
    DocumentStore,
    normalize_path,
    parent_collection,
    split_path,
)

logger = logging.getLogger(__name__)


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed store with synchronous change propagation.

    Every client sharing the instance sees every write, which mirrors the
    real-time propagation of a hosted document database.
    """

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._docs: Dict[str, Dict[str, Any]] = {}
        self.fail_writes = False

        logger.info("MEMORY_STORE_INITIALIZED")

    def get_doc(self, path: str) -> Optional[Document]:
        path = self._doc_path(path)
        with self._lock:
            data = self._docs.get(path)
            if data is None:
                return None
            return Document(path=path, data=copy.deepcopy(data))

    def set_doc(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        path = self._doc_path(path)
        with self._lock:
            self._check_writable(path)
            if merge and path in self._docs:
                self._docs[path].update(copy.deepcopy(data))
            else:
                self._docs[path] = copy.deepcopy(data)

            logger.debug(
                "MEMORY_STORE_WRITE",
                extra={"path": path, "merge": merge, "fields": sorted(data)}
            )
            self._notify_write(path)

    def create_doc(self, path: str, data: Dict[str, Any]) -> bool:
        path = self._doc_path(path)
        with self._lock:
            self._check_writable(path)
            if path in self._docs:
                return False
            self._docs[path] = copy.deepcopy(data)
            self._notify_write(path)
            return True

    def update_if(
        self,
        path: str,
        field: str,
        expected: str,
        data: Dict[str, Any],
    ) -> bool:
        path = self._doc_path(path)
        with self._lock:
            self._check_writable(path)
            current = self._docs.get(path)
            if current is None or current.get(field) != expected:
                return False
            current.update(copy.deepcopy(data))
            self._notify_write(path)
            return True

    def list_docs(self, collection_path: str) -> List[Document]:
        collection_path = normalize_path(collection_path)
        with self._lock:
            return [
                Document(path=path, data=copy.deepcopy(data))
                for path, data in self._docs.items()
                if parent_collection(path) == collection_path
            ]

    def simulate_outage(self, path: str, message: str = "store unavailable") -> None:
        """Report a transient failure to every listener of path."""
        self._hub.deliver_error(normalize_path(path), StoreError(message))

    def _check_writable(self, path: str) -> None:
        if self.fail_writes:
            logger.error("MEMORY_STORE_WRITE_FAILED", extra={"path": path})
            raise StoreError(f"Write to {path} failed")

    @staticmethod
    def _doc_path(path: str) -> str:
        segments = split_path(path)
        if len(segments) % 2 != 0:
            raise StoreError(f"Not a document path: {path!r}")
        return "/".join(segments)
