"""Product-line keys already applied in delta mode, per snapshot fingerprint."""

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Union

from customer_sync.reconcile.keys import ProductLineKey

logger = logging.getLogger(__name__)


def fingerprint(merged: dict[ProductLineKey, dict]) -> str:
    """Stable digest of merged keys and quantities, independent of input order."""
    entries = sorted(
        [list(key), row.get("quantidade")] for key, row in merged.items()
    )
    payload = json.dumps(entries, default=str, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class DeltaLedger:
    """JSON file recording which product-line deltas of a snapshot were applied.

    Layout::

        {"applied": {"<sha256>": {"updated_at": "<iso>", "keys": [[c, p, o], ...]}}}

    Keys are recorded batch by batch as soon as they are written, so a run
    that fails half-way can be re-run and only the missing keys are applied.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._applied: dict[str, dict] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                f"Ignoring unreadable delta ledger {self.path}: {e}",
                extra={"ledger_path": str(self.path)},
            )
            return
        applied = data.get("applied", {}) if isinstance(data, dict) else {}
        for digest, entry in applied.items():
            if isinstance(entry, dict):
                self._applied[digest] = {
                    "updated_at": entry.get("updated_at"),
                    "keys": [list(key) for key in entry.get("keys", [])],
                }

    def __contains__(self, digest: str) -> bool:
        return digest in self._applied

    def __len__(self) -> int:
        return len(self._applied)

    def applied_keys(self, digest: str) -> set[ProductLineKey]:
        """Keys of the snapshot ``digest`` already written."""
        entry = self._applied.get(digest)
        if entry is None:
            return set()
        return {ProductLineKey(*key) for key in entry["keys"]}

    def record(self, digest: str, keys: Iterable[ProductLineKey]) -> None:
        """Persist keys of snapshot ``digest`` as applied."""
        new_keys = set(keys) - self.applied_keys(digest)
        entry = self._applied.setdefault(digest, {"updated_at": None, "keys": []})
        if not new_keys and entry["updated_at"] is not None:
            return

        entry["keys"].extend(sorted(list(key) for key in new_keys))
        entry["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps({"applied": self._applied}, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        logger.info(
            f"Recorded {len(new_keys)} applied product-line deltas",
            extra={"ledger_path": str(self.path), "digest": digest, "key_count": len(entry["keys"])},
        )
