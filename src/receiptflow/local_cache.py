"""
Local scratch cache for sessions that have not signed in yet.

Holds the same three values the dashboard keeps in memory (receipts, tagged
bounties, untagged bounties) as JSON files in one directory. It is not a
durable store: it is emptied once its contents are migrated into the
document store, and optionally on every start of an anonymous session.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .models import Receipt, Bounty, MetadataDocument

logger = logging.getLogger(__name__)

RECEIPT_DATA = "receipt_data.json"
BOUNTY_DATA = "bounty_data.json"
UNTAGGED_BOUNTIES = "untagged_bounties.json"


@dataclass
class LocalSnapshot:
    receipts: List[Receipt] = field(default_factory=list)
    bounties: Dict[str, List[Bounty]] = field(default_factory=dict)
    untagged_bounties: List[Bounty] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.receipts or self.bounties or self.untagged_bounties)

    def metadata(self) -> MetadataDocument:
        return MetadataDocument(bounties=self.bounties, untagged_bounties=self.untagged_bounties)


class LocalCache:
    """JSON-file cache rooted at ``directory``."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def exists(self) -> bool:
        """True if any of the cache files is present."""
        return any((self.directory / name).exists() for name in (RECEIPT_DATA, BOUNTY_DATA, UNTAGGED_BOUNTIES))

    def load(self) -> LocalSnapshot:
        """Read the cache; unreadable files are logged and treated as empty."""
        snapshot = LocalSnapshot()

        raw_receipts = self._read(RECEIPT_DATA)
        if isinstance(raw_receipts, list):
            for item in raw_receipts:
                try:
                    snapshot.receipts.append(Receipt.model_validate(item))
                except PydanticValidationError as e:
                    logger.error(f"Failed to parse stored receipt: {e}")

        raw_bounties = self._read(BOUNTY_DATA)
        raw_untagged = self._read(UNTAGGED_BOUNTIES)
        try:
            metadata = MetadataDocument.model_validate({
                "bounties": raw_bounties or {},
                "untaggedBounties": raw_untagged or [],
            })
        except PydanticValidationError as e:
            logger.error(f"Failed to parse stored bounties: {e}")
            metadata = MetadataDocument()

        snapshot.bounties = metadata.bounties
        snapshot.untagged_bounties = metadata.untagged_bounties
        return snapshot

    def save(
        self,
        receipts: List[Receipt],
        bounties: Dict[str, List[Bounty]],
        untagged_bounties: List[Bounty],
    ) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._write(RECEIPT_DATA, [r.to_document() for r in receipts])
        self._write(BOUNTY_DATA, {
            name: [b.to_document() for b in items] for name, items in bounties.items()
        })
        self._write(UNTAGGED_BOUNTIES, [b.to_document() for b in untagged_bounties])
        logger.debug(f"Saved {len(receipts)} receipts to local cache {self.directory}")

    def clear(self) -> None:
        for name in (RECEIPT_DATA, BOUNTY_DATA, UNTAGGED_BOUNTIES):
            (self.directory / name).unlink(missing_ok=True)
        logger.debug(f"Cleared local cache {self.directory}")

    def _read(self, name: str) -> Optional[Any]:
        path = self.directory / name
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read local cache file {path}: {e}")
            return None

    def _write(self, name: str, data: Any) -> None:
        with open(self.directory / name, "w") as f:
            json.dump(data, f)
