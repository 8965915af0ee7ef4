"""Store path layout for one tenant (app id).

- private role profile: artifacts/{app_id}/users/{user_id}/profile/role
- shared observations:  artifacts/{app_id}/public/data/{collection}/{doc_id}
"""
from dataclasses import dataclass

from obstrack.shared.errors import StoreError


@dataclass(frozen=True)
class StorePaths:
    """Builds document and collection paths scoped to a tenant."""
    app_id: str

    def __post_init__(self):
        if not self.app_id or "/" in self.app_id:
            raise StoreError(f"Invalid app id: {self.app_id!r}")

    @property
    def root(self) -> str:
        return f"artifacts/{self.app_id}"

    def profile_doc(self, user_id: str) -> str:
        return f"{self.root}/users/{_segment(user_id)}/profile/role"

    def collection(self, name: str) -> str:
        return f"{self.root}/public/data/{_segment(name)}"

    def doc(self, collection_name: str, doc_id: str) -> str:
        return f"{self.collection(collection_name)}/{_segment(doc_id)}"


def _segment(value: str) -> str:
    if not value or "/" in value:
        raise StoreError(f"Invalid path segment: {value!r}")
    return value
