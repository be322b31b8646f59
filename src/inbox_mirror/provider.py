"""Protocol every mailbox provider client implements."""

from typing import Protocol, runtime_checkable

from .models import HistoryChanges, MetadataBatch, Profile


@runtime_checkable
class ProviderClient(Protocol):
    """Remote mailbox operations the reconciler and cleanup actions depend on.

    Implementations raise AuthExpired for rejected credentials and
    TransientError once their own retries are exhausted.
    """

    def list_all_ids(self, query: str | None = None, limit: int | None = None) -> list[str]:
        """Every message id matching the query, following pagination."""
        ...

    def list_recent(self, query: str | None, max_results: int) -> list[str]:
        """At most max_results of the newest matching ids."""
        ...

    def batch_get_metadata(self, ids: list[str], headers: list[str] | None = None) -> MetadataBatch:
        """Header metadata for ids; ids that could not be returned are listed, never dropped."""
        ...

    def history_changes(self, cursor: str) -> HistoryChanges:
        """Added/deleted ids since cursor; expired=True when the cursor is unusable."""
        ...

    def profile(self) -> Profile:
        """Mailbox address and the current change-feed cursor."""
        ...

    def trash_messages(self, ids: list[str]) -> list[str]:
        """Move messages to trash and return the ids that succeeded."""
        ...

    def archive_messages(self, ids: list[str]) -> list[str]:
        """Remove messages from the inbox and return the ids that succeeded."""
        ...
