import json
import logging
import os
import warnings
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from activity_digest.domain.cutoff import format_timestamp, parse_timestamp
from activity_digest.domain.exceptions import StateCorruptionWarning
from activity_digest.domain.models import (
    ActivityRecord,
    EntitySnapshot,
    PackageSnapshot,
    PackageStat,
    Snapshot,
)

logger = logging.getLogger(__name__)

# Written with a byte-order mark; reading with utf-8-sig also accepts files without one
STATE_ENCODING = "utf-8-sig"

EntryT = TypeVar("EntryT", bound=BaseModel)


def merge_state(current: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merges `patch` into `current` without dropping keys the patch does not mention.
    Map-valued keys (repos, psgallery) are merged per entity; patched values win.
    """
    merged = dict(current)
    for key, value in patch.items():
        existing = merged.get(key)
        if isinstance(value, dict) and isinstance(existing, dict):
            merged[key] = {**existing, **value}
        else:
            merged[key] = value
    return merged


def build_patch(
    owner: str,
    last_check: Optional[datetime],
    records: Iterable[ActivityRecord] = (),
    stats: Iterable[PackageStat] = (),
) -> Dict[str, Any]:
    """Builds the wire-format patch that records one run's observed counters."""
    return {
        "owner": owner,
        "last_check": format_timestamp(last_check) if last_check is not None else None,
        "repos": {record.name: {"stars": record.stars_now, "forks": record.forks_now} for record in records},
        "psgallery": {stat.name: {"downloads": stat.total_downloads} for stat in stats},
    }


class JsonStateStore:
    """
    Durable snapshot of last known counters, kept in a single JSON file.

    `load` never raises: a missing or unreadable file yields an empty Snapshot.
    `save` merges a patch into whatever is on disk and swaps the file in atomically.
    """

    def __init__(self, path):
        self.path = Path(path)

    def load(self, owner: str) -> Snapshot:
        raw = self._read()
        if raw is None:
            return Snapshot()

        stored_owner = raw.get("owner")
        if stored_owner and owner and stored_owner != owner:
            logger.warning(
                f"State file {self.path} belongs to '{stored_owner}', not '{owner}'. Starting from an empty snapshot."
            )
            return Snapshot()

        last_check = raw.get("last_check")
        return Snapshot(
            last_check=parse_timestamp(last_check) if isinstance(last_check, str) else None,
            entities=self._entries(raw.get("repos"), EntitySnapshot, "repos"),
            packages=self._entries(raw.get("psgallery"), PackageSnapshot, "psgallery"),
        )

    def save(self, patch: Dict[str, Any]) -> None:
        current = self._read() or {}

        stored_owner, owner = current.get("owner"), patch.get("owner")
        if stored_owner and owner and stored_owner != owner:
            logger.warning(
                f"State file {self.path} belongs to '{stored_owner}'; replacing it with state for '{owner}'."
            )
            current = {}

        self._write(merge_state(current, patch))
        logger.info(f"Saved state to {self.path}.")

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            logger.info(f"No state file at {self.path}; this run sets the baseline.")
            return None

        try:
            with open(self.path, "r", encoding=STATE_ENCODING) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            self._report_corruption(f"Could not read state file {self.path}: {e}")
            return None

        if not isinstance(data, dict):
            self._report_corruption(f"State file {self.path} does not contain a JSON object.")
            return None
        return data

    def _entries(self, raw_map: Any, model: Type[EntryT], section: str) -> Dict[str, EntryT]:
        if raw_map is None:
            return {}
        if not isinstance(raw_map, dict):
            self._report_corruption(f"Section '{section}' in {self.path} is not an object; ignoring it.")
            return {}

        entries: Dict[str, EntryT] = {}
        for name, value in raw_map.items():
            if not isinstance(value, dict):
                logger.warning(f"Skipping malformed '{section}' entry '{name}' in {self.path}.")
                continue
            try:
                entries[name] = model.model_validate(value)
            except ValidationError as e:
                logger.warning(f"Skipping invalid '{section}' entry '{name}' in {self.path}: {e}")
        return entries

    def _write(self, state: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding=STATE_ENCODING) as f:
            json.dump(state, f, ensure_ascii=False, indent=2)
            f.write("\n")
        os.replace(tmp, self.path)

    @staticmethod
    def _report_corruption(message: str) -> None:
        logger.warning(f"{message} Using an empty snapshot.")
        warnings.warn(message, StateCorruptionWarning, stacklevel=3)
