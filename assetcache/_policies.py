from __future__ import annotations

import abc
import random
from dataclasses import dataclass, field

from assetcache._core._rules import CacheOptions

__all__ = (
    "CachePolicy",
    "MaintenanceTrigger",
    "RandomTrigger",
    "AlwaysTrigger",
    "NeverTrigger",
)


class MaintenanceTrigger(abc.ABC):
    """Decides, after each cache write, whether an eviction pass should run."""

    @abc.abstractmethod
    def should_maintain(self) -> bool:
        pass


@dataclass
class RandomTrigger(MaintenanceTrigger):
    """
    Fires with a fixed probability per write.

    The default rate keeps maintenance overhead low while still bounding growth
    statistically; it is a tunable, not a derived constant.
    """

    probability: float = 0.05
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not 0.0 <= self.probability <= 1.0:
            raise ValueError("probability must be between 0 and 1")

    def should_maintain(self) -> bool:
        return self.rng.random() < self.probability


class AlwaysTrigger(MaintenanceTrigger):
    def should_maintain(self) -> bool:
        return True


class NeverTrigger(MaintenanceTrigger):
    def should_maintain(self) -> bool:
        return False


@dataclass
class CachePolicy:
    """
    Everything that configures a gateway besides its storage backends.

    Attributes:
    ----------
    cache_options : CacheOptions
        Request classification and response validation rules.
    max_items : int
        Soft bound on the number of stored entries. It may be exceeded between
        a write and the next eviction pass.
    prune_chunk : int
        Number of entries removed per eviction batch.
    maintenance_trigger : MaintenanceTrigger
        Rolled after every successful write; defaults to a 5% chance.
    maintain_when_idle : bool
        Run an eviction pass when the last in-flight request finishes, provided
        something was written since the previous idle pass.
    """

    cache_options: CacheOptions = field(default_factory=CacheOptions)
    max_items: int = 1000
    prune_chunk: int = 50
    maintenance_trigger: MaintenanceTrigger = field(default_factory=RandomTrigger)
    maintain_when_idle: bool = True

    def __post_init__(self) -> None:
        if self.max_items <= 0:
            raise ValueError("max_items must be positive")
        if self.prune_chunk <= 0:
            raise ValueError("prune_chunk must be positive")
