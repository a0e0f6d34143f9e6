"""
Item filters applied to remote enumeration
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..models.sync_models import RemoteItem


@dataclass(frozen=True)
class ItemFilter:
    """
    Enumeration filter

    An item passes when it is inside the import window AND (modified after
    the checkpoint OR carries no local-correlation marker yet). The marker
    clause is dropped for backends that cannot store one.
    """
    import_floor: Optional[datetime] = None
    modified_after: Optional[datetime] = None
    include_unmarked: bool = True
    exclude_drafts: bool = False

    def matches(self, item: RemoteItem, is_draft: bool = False) -> bool:
        if self.exclude_drafts and is_draft:
            return False

        if self.import_floor is not None:
            if item.last_modified is None or item.last_modified < self.import_floor:
                return False

        if self.modified_after is None:
            return True
        if item.last_modified is not None and item.last_modified > self.modified_after:
            return True
        return self.include_unmarked and not item.local_id

    def to_query(self) -> Dict[str, Any]:
        """Wire form sent to the backend gateway"""
        return {
            "importFloor": self.import_floor.isoformat() if self.import_floor else None,
            "modifiedAfter": self.modified_after.isoformat() if self.modified_after else None,
            "includeUnmarked": self.include_unmarked,
            "excludeDrafts": self.exclude_drafts,
        }
