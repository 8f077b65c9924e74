"""Append-only custody history per product.

Each step is hash-chained to its predecessor:

    digest_n = sha256(canonical({step_n fields..., "previous_digest": digest_{n-1}}))

so rewriting, dropping or reordering any stored step is detectable by
``verify_chain``. The first step of every product is synthesized at
creation; later steps are appended by transfers.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from custody.canonical import digest as canonical_digest
from custody.errors import AlreadyInitialized, NotFound
from custody.hardening import InvariantChecker, MonotonicClock, Validators
from custody.observability import RegistryLayer, get_logger

logger = get_logger("history_log", RegistryLayer.HISTORY)


@dataclass(frozen=True)
class SupplyChainStep:
    """One custody event. ``role`` is the actor's role when the step was recorded."""
    product_id: int
    sequence: int
    participant: str
    role: str
    timestamp: datetime
    location: str
    action: str
    notes: str
    previous_digest: Optional[str]
    digest: str

    def digest_payload(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "sequence": self.sequence,
            "participant": self.participant,
            "role": self.role,
            "timestamp": self.timestamp,
            "location": self.location,
            "action": self.action,
            "notes": self.notes,
            "previous_digest": self.previous_digest,
        }

    def compute_digest(self) -> str:
        return canonical_digest(self.digest_payload())

    def to_dict(self) -> Dict[str, Any]:
        data = self.digest_payload()
        data["digest"] = self.digest
        return data


def _make_step(
    product_id: int,
    sequence: int,
    participant: str,
    role: str,
    timestamp: datetime,
    location: str,
    action: str,
    notes: str,
    previous_digest: Optional[str],
) -> SupplyChainStep:
    payload = {
        "product_id": product_id,
        "sequence": sequence,
        "participant": participant,
        "role": role,
        "timestamp": timestamp,
        "location": location,
        "action": action,
        "notes": notes,
        "previous_digest": previous_digest,
    }
    return SupplyChainStep(digest=canonical_digest(payload), **payload)


class HistoryLog:
    """Mapping from product id to its ordered step sequence."""

    def __init__(self, *, clock: Optional[MonotonicClock] = None):
        self._clock = clock or MonotonicClock()
        self._logs: Dict[int, List[SupplyChainStep]] = {}
        self._lock = threading.RLock()

    def _steps(self, product_id: int) -> Optional[List[SupplyChainStep]]:
        if not Validators.is_product_id(product_id):
            return None
        return self._logs.get(product_id)

    def initialize(
        self,
        product_id: int,
        participant: str,
        role: str,
        location: str,
        action: str,
        notes: str,
    ) -> SupplyChainStep:
        """Start the history of ``product_id`` with its first step."""
        with self._lock:
            if product_id in self._logs:
                raise AlreadyInitialized(
                    f"history of product {product_id} is already initialized",
                    {"product_id": product_id},
                )
            step = _make_step(
                product_id, 0, participant, role, self._clock.now(),
                location, action, notes, previous_digest=None,
            )
            self._logs[product_id] = [step]

        logger.debug("history initialized", operation="initialize", product_id=product_id)
        return step

    def append(
        self,
        product_id: int,
        participant: str,
        role: str,
        location: str,
        action: str,
        notes: str,
    ) -> SupplyChainStep:
        """Append a step to the end of the history of ``product_id``."""
        with self._lock:
            steps = self._steps(product_id)
            if steps is None:
                raise NotFound(f"product {product_id} has no history", {"product_id": product_id})
            last = steps[-1]
            timestamp = self._clock.now()
            InvariantChecker.check_monotonic_increase("step timestamp", last.timestamp, timestamp)
            step = _make_step(
                product_id, len(steps), participant, role, timestamp,
                location, action, notes, previous_digest=last.digest,
            )
            steps.append(step)

        logger.debug(
            "history step appended",
            operation="append",
            product_id=product_id,
            sequence=step.sequence,
            action=action,
        )
        return step

    def get(self, product_id: int) -> List[SupplyChainStep]:
        """Snapshot of the full history, oldest first."""
        with self._lock:
            steps = self._steps(product_id)
            if steps is None:
                raise NotFound(f"product {product_id} has no history", {"product_id": product_id})
            return list(steps)

    def has(self, product_id: int) -> bool:
        with self._lock:
            return self._steps(product_id) is not None

    def length(self, product_id: int) -> int:
        with self._lock:
            steps = self._steps(product_id)
            return len(steps) if steps is not None else 0

    def head_digest(self, product_id: int) -> str:
        with self._lock:
            steps = self._steps(product_id)
            if steps is None:
                raise NotFound(f"product {product_id} has no history", {"product_id": product_id})
            return steps[-1].digest

    def verify_chain(self, product_id: int) -> Tuple[bool, Optional[int]]:
        """
        Recompute every digest and link of a product's history.

        Returns (valid, first_invalid_index).
        """
        steps = self.get(product_id)
        previous: Optional[str] = None
        for index, step in enumerate(steps):
            if step.sequence != index or step.product_id != product_id:
                return (False, index)
            if step.previous_digest != previous:
                return (False, index)
            if step.compute_digest() != step.digest:
                return (False, index)
            previous = step.digest
        return (True, None)

    def total_steps(self) -> int:
        with self._lock:
            return sum(len(steps) for steps in self._logs.values())

    # Compensation for RegistryService only.

    def rollback_initialize(self, product_id: int) -> None:
        with self._lock:
            self._logs.pop(product_id, None)

    def rollback_append(self, product_id: int, step: SupplyChainStep) -> None:
        with self._lock:
            steps = self._steps(product_id)
            if steps and steps[-1] is step:
                steps.pop()
