from __future__ import annotations

import logging
import typing as tp

from assetcache._core._sync._ledgers import SyncBaseLedger
from assetcache._core._sync._storages import SyncBaseStorage
from assetcache._exceptions import StorageUnavailable
from assetcache._synchronization import Lock

logger = logging.getLogger("assetcache.eviction")

__all__ = ("SyncEvictionScheduler",)


class SyncEvictionScheduler:
    """
    Removes least recently used entries once the store grows past ``max_items``.

    Entries go in whole batches of ``prune_chunk`` keys, oldest ledger timestamp
    first; keys without a ledger record count as timestamp zero and ties are broken
    by the key itself. One batch is removed when the overflow fits in it, otherwise
    as many batches as needed to get back under ``max_items``.

    Passes are serialized: a pass started while another one runs waits for it and
    then finds nothing left to do.
    """

    def __init__(
        self,
        storage: SyncBaseStorage,
        ledger: SyncBaseLedger,
        max_items: int = 1000,
        prune_chunk: int = 50,
    ) -> None:
        if max_items <= 0:
            raise ValueError("max_items must be positive")
        if prune_chunk <= 0:
            raise ValueError("prune_chunk must be positive")

        self.storage = storage
        self.ledger = ledger
        self.max_items = max_items
        self.prune_chunk = prune_chunk
        self._lock = Lock()

    def maintain(self, protected: tp.Iterable[str] = ()) -> tp.List[str]:
        """
        Run one eviction pass and return the evicted keys.

        :param protected: keys that must survive this pass, e.g. the key whose write triggered it
        """
        with self._lock:
            try:
                return self._prune(frozenset(protected))
            except StorageUnavailable as exc:
                logger.warning(f"Eviction pass aborted: {exc}")
                return []

    def _prune(self, protected: tp.FrozenSet[str]) -> tp.List[str]:
        keys = self.storage.keys()
        if len(keys) <= self.max_items:
            return []

        recency = self.ledger.snapshot()
        candidates = sorted(
            (key for key in keys if key not in protected),
            key=lambda key: (recency.get(key, 0), key),
        )
        overflow = len(keys) - self.max_items
        batches = -(-overflow // self.prune_chunk)
        victims = candidates[: batches * self.prune_chunk]

        evicted: tp.List[str] = []
        for key in victims:
            # The ledger record goes only once the entry itself is gone.
            if self.storage.delete_entry(key):
                self.ledger.remove(key)
                evicted.append(key)

        self._drop_orphans(recency, evicted)

        logger.info(f"Pruned {len(evicted)} least recently used entries")
        return evicted

    def _drop_orphans(self, recency: tp.Dict[str, int], evicted: tp.List[str]) -> None:
        # A record taken in the snapshot belongs to a key that was written before the
        # snapshot, so if the key is gone from the store now the record is stale.
        stored_keys = set(self.storage.keys())
        already_removed = set(evicted)
        orphans = [key for key in recency if key not in stored_keys and key not in already_removed]
        if orphans:
            logger.debug(f"Dropping {len(orphans)} ledger records without an entry")
            self.ledger.remove_many(orphans)
