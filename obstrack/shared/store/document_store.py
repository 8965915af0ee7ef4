"""Document store capability interface.

Documents live at hierarchical, Firestore-style paths:
    artifacts/{app_id}/public/data/{collection}/{doc_id}

A path with an odd number of segments names a collection, an even number
names a document. Every subscription is an owned Subscription handle that
must be released when its owner is torn down.
"""
import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from obstrack.shared.errors import StoreError

logger = logging.getLogger(__name__)

Snapshot = Union[Optional["Document"], List["Document"]]
OnNext = Callable[[Any], None]
OnError = Callable[[StoreError], None]


@dataclass(frozen=True)
class Document:
    """Point-in-time copy of a stored document."""
    path: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return doc_id_of(self.path)


def split_path(path: str) -> List[str]:
    segments = [s for s in path.strip("/").split("/") if s]
    if not segments:
        raise StoreError(f"Empty store path: {path!r}")
    return segments


def is_collection_path(path: str) -> bool:
    return len(split_path(path)) % 2 == 1


def parent_collection(doc_path: str) -> str:
    segments = split_path(doc_path)
    if len(segments) % 2 != 0:
        raise StoreError(f"Not a document path: {doc_path!r}")
    return "/".join(segments[:-1])


def doc_id_of(doc_path: str) -> str:
    return split_path(doc_path)[-1]


def normalize_path(path: str) -> str:
    return "/".join(split_path(path))


class Subscription:
    """Handle for one live listener.

    unsubscribe() is idempotent. Usable as a context manager so the
    listener is released on scope exit.
    """

    def __init__(self, cancel: Callable[[], None], path: str = ""):
        self._cancel = cancel
        self._active = True
        self.path = path

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._cancel()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *args) -> None:
        self.unsubscribe()


class _Listener:
    def __init__(self, on_next: OnNext, on_error: Optional[OnError]):
        self.on_next = on_next
        self.on_error = on_error


class SnapshotHub:
    """Fans store changes out to listeners registered per path.

    Delivery is synchronous, in the order writes are applied.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._listeners: Dict[str, List[_Listener]] = {}

    def add(
        self,
        path: str,
        on_next: OnNext,
        on_error: Optional[OnError] = None,
    ) -> Subscription:
        listener = _Listener(on_next, on_error)
        with self._lock:
            self._listeners.setdefault(path, []).append(listener)

        def cancel() -> None:
            with self._lock:
                listeners = self._listeners.get(path, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(path, None)
            logger.debug("STORE_LISTENER_REMOVED", extra={"path": path})

        logger.debug("STORE_LISTENER_ADDED", extra={"path": path})
        return Subscription(cancel, path=path)

    def has_listeners(self, path: str) -> bool:
        with self._lock:
            return bool(self._listeners.get(path))

    def listener_count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._listeners.values())

    def deliver(self, path: str, snapshot: Snapshot) -> None:
        with self._lock:
            listeners = list(self._listeners.get(path, []))
        for listener in listeners:
            try:
                listener.on_next(copy.deepcopy(snapshot))
            except Exception as e:
                logger.error(
                    "STORE_LISTENER_FAILED",
                    extra={"path": path, "error": str(e)}
                )

    def deliver_error(self, path: str, error: StoreError) -> None:
        with self._lock:
            listeners = list(self._listeners.get(path, []))
        logger.warning(
            "STORE_SUBSCRIPTION_ERROR",
            extra={"path": path, "error": str(error), "listeners": len(listeners)}
        )
        for listener in listeners:
            if listener.on_error is None:
                continue
            try:
                listener.on_error(error)
            except Exception as e:
                logger.error(
                    "STORE_ERROR_LISTENER_FAILED",
                    extra={"path": path, "error": str(e)}
                )


class DocumentStore(ABC):
    """Collection-of-documents store with real-time subscriptions."""

    def __init__(self):
        self._hub = SnapshotHub()

    @abstractmethod
    def get_doc(self, path: str) -> Optional[Document]:
        """Point read. Returns None when the document is absent."""

    @abstractmethod
    def set_doc(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        """Write a document; merge=True updates only the given fields."""

    @abstractmethod
    def create_doc(self, path: str, data: Dict[str, Any]) -> bool:
        """Create-if-absent write.

        Returns:
            True if created, False if a document already existed (untouched)
        """

    @abstractmethod
    def update_if(
        self,
        path: str,
        field: str,
        expected: str,
        data: Dict[str, Any],
    ) -> bool:
        """Merge data into an existing document only while field == expected.

        The check and the write are atomic.

        Returns:
            True if written, False if the document is absent or field differs
        """

    @abstractmethod
    def list_docs(self, collection_path: str) -> List[Document]:
        """All documents directly inside a collection."""

    def new_doc_id(self) -> str:
        return uuid.uuid4().hex[:20]

    def on_snapshot(
        self,
        path: str,
        on_next: OnNext,
        on_error: Optional[OnError] = None,
    ) -> Subscription:
        """Subscribe to a document or a collection.

        The current state is delivered immediately, then again after every
        write touching the path. on_next receives Optional[Document] for a
        document path and List[Document] for a collection path.
        """
        path = normalize_path(path)
        subscription = self._hub.add(path, on_next, on_error)
        try:
            snapshot = self._read_snapshot(path)
        except StoreError as e:
            # Only the new listener failed to load
            logger.warning(
                "STORE_SUBSCRIPTION_ERROR",
                extra={"path": path, "error": str(e), "listeners": 1}
            )
            if on_error is not None:
                try:
                    on_error(e)
                except Exception as callback_error:
                    logger.error(
                        "STORE_ERROR_LISTENER_FAILED",
                        extra={"path": path, "error": str(callback_error)}
                    )
            return subscription

        try:
            on_next(copy.deepcopy(snapshot))
        except Exception as e:
            logger.error(
                "STORE_LISTENER_FAILED",
                extra={"path": path, "error": str(e)}
            )
        return subscription

    def _read_snapshot(self, path: str) -> Snapshot:
        if is_collection_path(path):
            return self.list_docs(path)
        return self.get_doc(path)

    def _notify_write(self, doc_path: str) -> None:
        """Push fresh snapshots to listeners of a written document and its collection."""
        collection = parent_collection(doc_path)
        for path in (doc_path, collection):
            if not self._hub.has_listeners(path):
                continue
            try:
                snapshot = self._read_snapshot(path)
            except StoreError as e:
                self._hub.deliver_error(path, e)
                continue
            self._hub.deliver(path, snapshot)
