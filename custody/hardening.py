"""
Custody Registry Hardening Primitives

Input validation, thread-safety primitives and invariant checks shared by the
registry components:

1. Identity validation with sanitization
2. Atomic counters for id allocation
3. Per-key mutual exclusion (one lock per product id)
4. A monotonic wall clock for non-decreasing step timestamps
5. Invariant enforcement helpers

Security Model:
    - All identities are untrusted until validated
    - Per-product mutations run under that product's lock only
    - Counters never move backwards except through an explicit compensation
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationError(Exception):
    """A single field failed validation."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class InvariantViolation(Exception):
    """An internal registry invariant was violated."""
    pass


@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    @property
    def first_error(self) -> Optional[ValidationError]:
        return self.errors[0] if self.errors else None

    @classmethod
    def success(cls, sanitized_value: Any = None) -> "ValidationResult":
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> "ValidationResult":
        return cls(is_valid=False, errors=errors)


class Validators:
    """Collection of input validators."""

    MAX_IDENTITY_LENGTH = 256

    @classmethod
    def validate_identity(cls, value: Any, field_name: str = "identity") -> ValidationResult:
        """Validate a participant identity.

        Identities are opaque strings (an address, a DID, a username) compared
        byte for byte, so they are checked as given and never rewritten:
        surrounding whitespace and null bytes are rejected.
        """
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])

        if not value.strip():
            return ValidationResult.failure([
                ValidationError(field_name, "Identity cannot be empty", value)
            ])
        if value != value.strip() or "\x00" in value:
            return ValidationResult.failure([
                ValidationError(field_name, "Identity cannot contain surrounding whitespace or null bytes", value)
            ])
        if len(value) > cls.MAX_IDENTITY_LENGTH:
            return ValidationResult.failure([
                ValidationError(field_name, f"Too long (max {cls.MAX_IDENTITY_LENGTH} chars)", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def is_identity(cls, value: Any) -> bool:
        return cls.validate_identity(value).is_valid

    @staticmethod
    def is_product_id(value: Any) -> bool:
        """Product ids are positive ints; bools are rejected even though True == 1."""
        return isinstance(value, int) and not isinstance(value, bool) and value >= 1


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        """Get current value."""
        with self._lock:
            return self._value

    def compare_and_set(self, expected: int, new_value: int) -> bool:
        """Atomically set value if it equals expected."""
        with self._lock:
            if self._value == expected:
                self._value = new_value
                return True
            return False


class KeyedLocks:
    """One re-entrant lock per key.

    Operations on different keys never contend with each other; operations on
    the same key are serialized. Locks are re-entrant so that an event handler
    running inside a product's critical section may read that same product.
    """

    def __init__(self) -> None:
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self.lock_for(key):
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class MonotonicClock:
    """UTC wall clock that never goes backwards.

    If the underlying source steps back (NTP adjustment, a test clock), the
    last issued value is returned again, so successive readings are always
    non-decreasing in call order.
    """

    def __init__(self, source: Optional[Callable[[], datetime]] = None):
        self._source = source or (lambda: datetime.now(timezone.utc))
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = self._source()
            if current.tzinfo is None:
                current = current.replace(tzinfo=timezone.utc)
            if self._last is not None and current < self._last:
                current = self._last
            self._last = current
            return current


# =============================================================================
# INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces registry invariants."""

    @staticmethod
    def check_monotonic_increase(field_name: str, old_value: Any, new_value: Any) -> None:
        """Ensure value does not decrease."""
        if new_value < old_value:
            raise InvariantViolation(
                f"{field_name} must be non-decreasing: "
                f"cannot go from {old_value} to {new_value}"
            )

    @staticmethod
    def check_next_id(expected: int, actual: int) -> None:
        """Ensure ids are allocated without gaps."""
        if actual != expected:
            raise InvariantViolation(f"id allocation gap: expected {expected}, got {actual}")
