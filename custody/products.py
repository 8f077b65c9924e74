"""Product records and the store that owns them.

Ids are allocated from 1 upwards, one per successful creation, and are never
reused. ``transfer_ownership`` is the only operation that changes a product's
``current_owner``. There is no deletion and no way to clear ``is_authentic``.

The store serializes access to its own maps but does not order operations on
the same product; RegistryService holds the product's lock around every
create and transfer.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from custody.access import AccessControl
from custody.errors import NotFound, NotOwner, RecipientNotAuthorized, SelfTransfer
from custody.hardening import InvariantChecker, InvariantViolation, MonotonicClock, Validators
from custody.observability import RegistryLayer, get_logger

logger = get_logger("product_store", RegistryLayer.PRODUCTS)

Price = Union[int, Decimal]


@dataclass(frozen=True)
class Product:
    """A tracked item. Everything except ``current_owner`` is fixed at creation."""
    id: int
    name: str
    material_type: str
    origin: str
    manufacturer: str
    current_owner: str
    created_at: datetime
    certifications: Tuple[str, ...]
    is_authentic: bool
    price: Price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "material_type": self.material_type,
            "origin": self.origin,
            "manufacturer": self.manufacturer,
            "current_owner": self.current_owner,
            "created_at": self.created_at,
            "certifications": list(self.certifications),
            "is_authentic": self.is_authentic,
            "price": str(self.price),
        }


def _as_certifications(certifications: Optional[Iterable[str]]) -> Tuple[str, ...]:
    if certifications is None:
        return ()
    if isinstance(certifications, str):
        raise TypeError("certifications must be a sequence of tags, not a single string")
    tags = tuple(certifications)
    for tag in tags:
        if not isinstance(tag, str):
            raise TypeError(f"certification tags must be strings, got {type(tag).__name__}")
    return tags


class ProductStore:
    """Mapping from product id to product record."""

    def __init__(self, access: AccessControl, *, clock: Optional[MonotonicClock] = None):
        self._access = access
        self._clock = clock or MonotonicClock()
        self._products: Dict[int, Product] = {}
        self._next_id = 1
        self._lock = threading.RLock()

    @property
    def next_id(self) -> int:
        """Id the next successful ``create`` will return."""
        with self._lock:
            return self._next_id

    def create(
        self,
        manufacturer: str,
        name: str,
        material_type: str,
        origin: str,
        price: Price,
        certifications: Optional[Iterable[str]] = None,
    ) -> int:
        """Create a product owned by its manufacturer and return its id."""
        tags = _as_certifications(certifications)
        with self._lock:
            product_id = self._next_id
            product = Product(
                id=product_id,
                name=name,
                material_type=material_type,
                origin=origin,
                manufacturer=manufacturer,
                current_owner=manufacturer,
                created_at=self._clock.now(),
                certifications=tags,
                is_authentic=True,
                price=price,
            )
            self._products[product_id] = product
            self._next_id = product_id + 1

        logger.debug("product record created", operation="create", product_id=product_id)
        return product_id

    def transfer_ownership(self, product_id: int, from_owner: str, to_owner: str) -> str:
        """Move custody from ``from_owner`` to ``to_owner``; return the previous owner."""
        with self._lock:
            product = self._lookup(product_id)
            if product is None:
                raise NotFound(f"product {product_id} does not exist", {"product_id": product_id})
            if product.current_owner != from_owner:
                raise NotOwner(
                    f"{from_owner!r} is not the current owner of product {product_id}",
                    {"product_id": product_id, "caller": from_owner},
                )
            if not self._access.is_authorized(to_owner):
                raise RecipientNotAuthorized(
                    f"recipient {to_owner!r} is not an authorized participant",
                    {"product_id": product_id, "recipient": to_owner},
                )
            if to_owner == from_owner:
                raise SelfTransfer(
                    f"product {product_id} is already owned by {from_owner!r}",
                    {"product_id": product_id},
                )

            self._products[product_id] = replace(product, current_owner=to_owner)

        logger.debug(
            "ownership changed",
            operation="transfer_ownership",
            product_id=product_id,
            previous_owner=from_owner,
            new_owner=to_owner,
        )
        return from_owner

    def get(self, product_id: int) -> Product:
        """Return the product record; records are immutable values."""
        with self._lock:
            product = self._lookup(product_id)
        if product is None:
            raise NotFound(f"product {product_id} does not exist", {"product_id": product_id})
        return product

    def exists(self, product_id: int) -> bool:
        with self._lock:
            return self._lookup(product_id) is not None

    def _lookup(self, product_id: int) -> Optional[Product]:
        if not Validators.is_product_id(product_id):
            return None
        return self._products.get(product_id)

    def count(self) -> int:
        with self._lock:
            return self._next_id - 1

    def all(self) -> List[Product]:
        """Every product in id order."""
        with self._lock:
            return [self._products[i] for i in sorted(self._products)]

    # -- compensation -------------------------------------------------------
    # Used only by RegistryService to undo its own half-applied unit before
    # re-raising; never reachable from the public API.

    def rollback_create(self, product_id: int) -> None:
        with self._lock:
            InvariantChecker.check_next_id(self._next_id - 1, product_id)
            self._products.pop(product_id, None)
            self._next_id = product_id
        logger.warning("product creation rolled back", operation="rollback_create", product_id=product_id)

    def rollback_transfer(self, product_id: int, previous_owner: str, new_owner: str) -> None:
        with self._lock:
            product = self._products.get(product_id)
            if product is None or product.current_owner != new_owner:
                raise InvariantViolation(
                    f"cannot roll back transfer of product {product_id}: owner changed concurrently"
                )
            self._products[product_id] = replace(product, current_owner=previous_owner)
        logger.warning("ownership change rolled back", operation="rollback_transfer", product_id=product_id)
