from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Transition(str, Enum):
    DEACTIVATING = "deactivating"
    REACTIVATING = "reactivating"


@dataclass(frozen=True)
class FeatureToggleEvent:
    # Emitted for every activation write; only flag changes cascade.
    tenant_id: str
    feature_key: str
    previous_active: bool | None
    new_active: bool
