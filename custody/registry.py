"""
Custody Registry Service

Orchestrates AccessControl, ProductStore and HistoryLog into the public
registry operations and emits notifications for observers.

    register_product ──▶ require_authorized ──▶ ProductStore.create
                                             ──▶ HistoryLog.initialize
                                             ──▶ ProductRegistered, SupplyChainStepAdded

    transfer_product ──▶ require_authorized ──▶ ProductStore.transfer_ownership
                                             ──▶ HistoryLog.append
                                             ──▶ ProductTransferred, SupplyChainStepAdded

    verify_product   ──▶ (public) product record + full history

Isolation: each product id has its own re-entrant lock, held across the
record update, the history append and the notifications of one operation.
Reads that combine record and history take the same lock, so they never see
one half of a create or transfer. Registrations are additionally serialized
with each other so ids are allocated without gaps. Operations on different
products never wait for each other.

Atomicity: if a later step of a unit fails, earlier steps are compensated
before the error propagates, leaving the registry exactly as it was.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from custody.access import AccessControl, Participant
from custody.attestation import build_provenance_report, sign_report, verification_method_for
from custody.canonical import coerce_json_types
from custody.config import RegistryConfig
from custody.errors import IntegrityError, NotAuthorized, NotFound
from custody.events import (
    Event,
    EventBus,
    EventHandler,
    EventStore,
    ProductRegistered,
    ProductTransferred,
    SupplyChainStepAdded,
)
from custody.hardening import AtomicCounter, InvariantViolation, KeyedLocks, MonotonicClock
from custody.history import HistoryLog, SupplyChainStep
from custody.observability import RegistryLayer, correlation_id_var, get_logger
from custody.products import Price, Product, ProductStore

logger = get_logger("registry_service", RegistryLayer.REGISTRY)


@dataclass(frozen=True)
class ProvenanceAudit:
    """Verification result with the history chain integrity check."""
    product: Product
    history: Tuple[SupplyChainStep, ...]
    chain_valid: bool
    first_invalid_index: Optional[int]
    head_digest: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": self.product.to_dict(),
            "history": [step.to_dict() for step in self.history],
            "chain_valid": self.chain_valid,
            "first_invalid_index": self.first_invalid_index,
            "head_digest": self.head_digest,
        }


def _check_price(price: Any) -> Price:
    if isinstance(price, bool) or not isinstance(price, (int, Decimal)):
        raise TypeError(f"price must be an int or Decimal, got {type(price).__name__}")
    if isinstance(price, Decimal) and not price.is_finite():
        raise ValueError("price must be a finite number")
    return price


def _check_text(**fields: Any) -> None:
    for field_name, value in fields.items():
        if not isinstance(value, str):
            raise TypeError(f"{field_name} must be a string, got {type(value).__name__}")


class RegistryService:
    """The custody registry: one explicitly owned store of all registry state."""

    def __init__(
        self,
        admin: str,
        *,
        config: Optional[RegistryConfig] = None,
        clock: Optional[MonotonicClock] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config or RegistryConfig()
        self._clock = clock or MonotonicClock()
        self._bus = event_bus or EventBus()
        self._store = EventStore(max_events=self.config.events.max_stored_notifications.get())

        self._access = AccessControl(
            admin,
            admin_role=self.config.registry.admin_role.get(),
            clock=self._clock,
            event_sink=self._emit,
        )
        self._products = ProductStore(self._access, clock=self._clock)
        self._history = HistoryLog(clock=self._clock)

        self._product_locks = KeyedLocks()
        self._registration_lock = threading.RLock()
        self._transfer_count = AtomicCounter(0)

        logger.info("registry initialized", operation="init", admin=self._access.admin)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def admin(self) -> str:
        return self._access.admin

    @property
    def access(self) -> AccessControl:
        return self._access

    @property
    def products(self) -> ProductStore:
        return self._products

    @property
    def history(self) -> HistoryLog:
        return self._history

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def event_store(self) -> EventStore:
        return self._store

    def _emit(self, event: Event) -> None:
        event.correlation_id = correlation_id_var.get() or None
        if self.config.events.record_notifications.get():
            self._store.append(event)
        self._bus.publish(event)

    def _require_existing(self, product_id: int) -> None:
        if not self._products.exists(product_id):
            raise NotFound(f"product {product_id} does not exist", {"product_id": product_id})

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def authorize_participant(self, caller: str, target: str, role: str) -> Participant:
        """Admin-only: authorize ``target`` with ``role``."""
        with logger.timed("authorize_participant", caller=caller, target=target):
            return self._access.authorize(caller, target, role)

    def register_product(
        self,
        caller: str,
        name: str,
        material_type: str,
        origin: str,
        price: Price,
        certifications: Optional[Iterable[str]] = None,
    ) -> int:
        """Create a product owned by ``caller`` and start its history. Returns the id."""
        with logger.timed("register_product", caller=caller):
            self._access.require_authorized(caller)
            _check_text(name=name, material_type=material_type, origin=origin)
            price = _check_price(price)
            role = self._access.role_of(caller)

            with self._registration_lock:
                expected_id = self._products.next_id
                with self._product_locks.hold(expected_id):
                    product_id = self._products.create(
                        caller, name, material_type, origin, price, certifications
                    )
                    try:
                        if product_id != expected_id:
                            raise InvariantViolation(
                                f"allocated id {product_id}, expected {expected_id}"
                            )
                        self._history.initialize(
                            product_id,
                            caller,
                            role,
                            origin,
                            self.config.registry.genesis_action.get(),
                            self.config.registry.genesis_notes.get(),
                        )
                    except Exception:
                        self._products.rollback_create(product_id)
                        raise

                    genesis_action = self.config.registry.genesis_action.get()
                    self._emit(ProductRegistered(product_id=product_id, name=name, manufacturer=caller))
                    self._emit(SupplyChainStepAdded(product_id=product_id, actor=caller, action=genesis_action))

        logger.info(
            "product registered",
            operation="register_product",
            product_id=product_id,
            manufacturer=caller,
            role=role,
        )
        return product_id

    def transfer_product(
        self,
        caller: str,
        product_id: int,
        to: str,
        location: str,
        action: str,
        notes: str = "",
    ) -> SupplyChainStep:
        """Move custody of ``product_id`` from ``caller`` to ``to`` and record the step."""
        with logger.timed("transfer_product", caller=caller, product_id=product_id, to=to):
            self._access.require_authorized(caller)
            _check_text(location=location, action=action, notes=notes)
            self._require_existing(product_id)
            role = self._access.role_of(caller)

            with self._product_locks.hold(product_id):
                previous_owner = self._products.transfer_ownership(product_id, caller, to)
                try:
                    step = self._history.append(product_id, caller, role, location, action, notes)
                except Exception:
                    self._products.rollback_transfer(product_id, previous_owner, to)
                    raise

                self._transfer_count.increment()
                self._emit(ProductTransferred(
                    product_id=product_id,
                    previous_owner=previous_owner,
                    new_owner=to,
                ))
                self._emit(SupplyChainStepAdded(product_id=product_id, actor=caller, action=action))

        logger.info(
            "product transferred",
            operation="transfer_product",
            product_id=product_id,
            previous_owner=previous_owner,
            new_owner=to,
            action=action,
        )
        return step

    # ------------------------------------------------------------------
    # Public reads
    # ------------------------------------------------------------------

    def verify_product(self, product_id: int) -> Tuple[Product, List[SupplyChainStep]]:
        """Public provenance read: the product and its full history, oldest first."""
        self._require_existing(product_id)
        with self._product_locks.hold(product_id):
            product = self._products.get(product_id)
            steps = self._history.get(product_id)
            if self.config.registry.verify_history_on_read.get():
                ok, bad_index = self._history.verify_chain(product_id)
                if not ok:
                    logger.error(
                        "history chain verification failed",
                        error_code=IntegrityError.code,
                        product_id=product_id,
                        first_invalid_index=bad_index,
                    )
                    raise IntegrityError(
                        f"history of product {product_id} failed verification at step {bad_index}",
                        {"product_id": product_id, "first_invalid_index": bad_index},
                    )

        logger.debug("product verified", operation="verify_product", product_id=product_id)
        return product, steps

    def audit_product(self, product_id: int) -> ProvenanceAudit:
        """Like verify_product, but reports chain integrity instead of raising."""
        self._require_existing(product_id)
        with self._product_locks.hold(product_id):
            product = self._products.get(product_id)
            steps = self._history.get(product_id)
            ok, bad_index = self._history.verify_chain(product_id)
        return ProvenanceAudit(
            product=product,
            history=tuple(steps),
            chain_valid=ok,
            first_invalid_index=bad_index,
            head_digest=steps[-1].digest,
        )

    def attest_product(
        self,
        product_id: int,
        private_key: Ed25519PrivateKey,
        verification_method: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build a provenance report for ``product_id`` and sign it."""
        audit = self.audit_product(product_id)
        if not audit.chain_valid:
            raise IntegrityError(
                f"refusing to attest product {product_id}: history failed verification",
                {"product_id": product_id, "first_invalid_index": audit.first_invalid_index},
            )
        report = build_provenance_report(
            audit.product,
            audit.history,
            head_digest=audit.head_digest,
            report_type=self.config.attestation.report_type.get(),
        )
        vm = verification_method or verification_method_for(
            private_key, self.config.attestation.issuer_kid.get()
        )
        sign_report(report, private_key, vm)
        logger.info("provenance report signed", operation="attest_product", product_id=product_id)
        return report

    def get_product(self, product_id: int) -> Product:
        return self._products.get(product_id)

    def get_product_history(self, product_id: int) -> List[SupplyChainStep]:
        return self._history.get(product_id)

    def get_total_products(self) -> int:
        return self._products.count()

    def is_authorized(self, identity: str) -> bool:
        return self._access.is_authorized(identity)

    def get_participant(self, identity: str) -> Participant:
        participant = self._access.get(identity)
        if participant is None:
            raise NotAuthorized(f"{identity!r} is not an authorized participant", {"identity": identity})
        return participant

    def list_participants(self) -> List[Participant]:
        return self._access.participants()

    def products_owned_by(self, identity: str) -> List[Product]:
        return [p for p in self._products.all() if p.current_owner == identity]

    def products_manufactured_by(self, identity: str) -> List[Product]:
        return [p for p in self._products.all() if p.manufacturer == identity]

    def get_statistics(self) -> Dict[str, Any]:
        participants = self._access.participants()
        by_role: Dict[str, int] = {}
        for participant in participants:
            by_role[participant.role] = by_role.get(participant.role, 0) + 1
        return {
            "total_products": self._products.count(),
            "total_participants": len(participants),
            "participants_by_role": by_role,
            "total_history_steps": self._history.total_steps(),
            "total_transfers": self._transfer_count.get(),
            "event_bus": self._bus.metrics,
            "recorded_notifications": self._store.total_events,
        }

    def export_registry(self) -> Dict[str, Any]:
        """JSON-compatible snapshot of participants, products and histories."""
        products: List[Dict[str, Any]] = []
        for product in self._products.all():
            with self._product_locks.hold(product.id):
                current = self._products.get(product.id)
                steps = self._history.get(product.id)
            entry = current.to_dict()
            entry["history"] = [step.to_dict() for step in steps]
            products.append(entry)
        return coerce_json_types({
            "admin": self.admin,
            "participants": [p.to_dict() for p in self._access.participants()],
            "products": products,
            "total_products": len(products),
        })

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        return self._bus.subscribe(*event_types, priority=priority, filter_func=filter_func)

    def notifications(self, stream_id: Optional[str] = None) -> List[Event]:
        """Recorded notifications, optionally limited to one stream."""
        if stream_id is not None:
            return self._store.read_stream(stream_id)
        return [record.event for record in self._store.read_all(max_count=self._store.total_events)]


__all__ = ["RegistryService", "ProvenanceAudit"]
