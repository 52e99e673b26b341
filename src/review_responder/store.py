"""
In-memory review store.

Owns the ordered review records and the current selection. Every change to a
record's reply state goes through ``update`` so the displayed state and the
in-flight state are the same object.
"""

from typing import Any, Dict, Iterator, List, Optional, Sequence

from review_responder.logging import get_logger
from review_responder.models import Review, ReviewKey, ReviewRecord

logger = get_logger(__name__)

_MUTABLE_FIELDS = frozenset({"draft_text", "workflow_state", "last_error", "status_message"})


class UnknownReviewError(KeyError):
    """Raised when a review identity is not in the store."""


class ReviewStore:
    """Ordered review records plus the selection index."""

    def __init__(self, reviews: Sequence[Review] = ()):
        self._records: List[ReviewRecord] = []
        self._index: Dict[ReviewKey, ReviewRecord] = {}
        self._selection: Optional[int] = None
        if reviews:
            self.replace_all(reviews)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ReviewRecord]:
        return iter(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._index

    @property
    def records(self) -> List[ReviewRecord]:
        """Records in platform-native order (a copy of the list)."""
        return list(self._records)

    @property
    def selection(self) -> Optional[int]:
        return self._selection

    @property
    def selected(self) -> Optional[ReviewRecord]:
        if self._selection is None:
            return None
        return self._records[self._selection]

    def get(self, key: ReviewKey) -> ReviewRecord:
        try:
            return self._index[key]
        except KeyError:
            raise UnknownReviewError(key) from None

    def update(self, key: ReviewKey, **fields: Any) -> ReviewRecord:
        """
        Mutate a record's reply state in place.

        Raises:
            UnknownReviewError: If the review is not in the store
            AttributeError: If a field is not a mutable record field
        """
        record = self.get(key)
        for name, value in fields.items():
            if name not in _MUTABLE_FIELDS:
                raise AttributeError(f"ReviewRecord field '{name}' cannot be updated")
            setattr(record, name, value)
        return record

    def replace_all(self, reviews: Sequence[Review]) -> bool:
        """
        Merge a fresh fetch by identity.

        Surviving identities keep their record (draft and workflow state) with
        the new snapshot; new identities get fresh records; identities missing
        from the fetch are dropped. The result follows the fetch order.

        Returns:
            True if the list or any snapshot changed
        """
        previous_key = self.selected.key if self.selected else None
        previous_order = [record.key for record in self._records]

        records: List[ReviewRecord] = []
        index: Dict[ReviewKey, ReviewRecord] = {}
        changed = False

        for review in reviews:
            if review.key in index:
                # platforms occasionally repeat an item across pages
                continue
            record = self._index.get(review.key)
            if record is None:
                record = ReviewRecord(review=review)
            elif record.review != review:
                record.review = review
                changed = True
            records.append(record)
            index[review.key] = record

        removed = len(self._index.keys() - index.keys())
        added = len(index.keys() - self._index.keys())

        self._records = records
        self._index = index
        changed = changed or previous_order != [record.key for record in records]

        if not records:
            self._selection = None
        elif previous_key in index:
            self._selection = next(
                position for position, record in enumerate(records)
                if record.key == previous_key
            )
        else:
            self._selection = min(self._selection or 0, len(records) - 1)

        logger.debug(
            "Store refreshed",
            total=len(records),
            added=added,
            removed=removed,
            selection=self._selection,
        )
        return changed

    def move_selection(self, delta: int) -> bool:
        """Move the selection by ``delta``, clamped. Returns True if it moved."""
        if self._selection is None:
            return False
        return self.select(self._selection + delta)

    def select(self, index: int) -> bool:
        """Jump to ``index``, clamped. Returns True if the selection changed."""
        if not self._records:
            return False
        target = max(0, min(index, len(self._records) - 1))
        if target == self._selection:
            return False
        self._selection = target
        return True
