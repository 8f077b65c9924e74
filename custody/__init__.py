"""
Custody: tamper-evident product custody registry

Tracks ownership and custody history of products as they move between a
fixed set of authorized participants.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          CUSTODY REGISTRY                                │
    │                                                                          │
    │  registry.py      RegistryService: register, transfer, verify           │
    │                                                                          │
    │  access.py        AccessControl: admin, participants, roles              │
    │  products.py      ProductStore: id allocation, ownership                 │
    │  history.py       HistoryLog: append-only, hash-chained steps            │
    │                                                                          │
    │  events.py        Notifications, EventBus, EventStore                    │
    │  attestation.py   Signed provenance reports (Ed25519, did:key)           │
    │  config.py        YAML + environment configuration                       │
    │  observability.py Structured logging, correlation ids                    │
    │  hardening.py     Validation, locks, counters, monotonic clock           │
    │  canonical.py     Canonical JSON bytes and digests                       │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Usage
─────

    from custody import RegistryService

    registry = RegistryService(admin="0xadmin")
    registry.authorize_participant("0xadmin", "0xfactory", "manufacturer")
    registry.authorize_participant("0xadmin", "0xshop", "retailer")

    pid = registry.register_product("0xfactory", "Shirt", "Cotton", "India", 100, ["organic"])
    registry.transfer_product("0xfactory", pid, "0xshop", "Mumbai", "Shipped", "")

    product, history = registry.verify_product(pid)
"""

__version__ = "0.3.0"


def __getattr__(name):
    """Lazy import of the public API."""

    if name in ("RegistryService", "ProvenanceAudit"):
        from custody import registry
        return getattr(registry, name)

    if name in ("AccessControl", "Participant"):
        from custody import access
        return getattr(access, name)

    if name in ("ProductStore", "Product"):
        from custody import products
        return getattr(products, name)

    if name in ("HistoryLog", "SupplyChainStep"):
        from custody import history
        return getattr(history, name)

    if name in ("Event", "EventBus", "EventStore", "ProductRegistered",
                "ProductTransferred", "SupplyChainStepAdded", "ParticipantAuthorized"):
        from custody import events
        return getattr(events, name)

    if name in ("RegistryConfig", "ConfigManager", "load_config"):
        from custody import config
        return getattr(config, name)

    if name in ("RegistryError", "Unauthorized", "NotAuthorized", "NotFound", "NotOwner",
                "RecipientNotAuthorized", "SelfTransfer", "AlreadyAuthorized",
                "InvalidTarget", "AlreadyInitialized", "IntegrityError"):
        from custody import errors
        return getattr(errors, name)

    raise AttributeError(f"module 'custody' has no attribute '{name}'")


__all__ = [
    "__version__",
    "RegistryService",
    "ProvenanceAudit",
    "AccessControl",
    "Participant",
    "ProductStore",
    "Product",
    "HistoryLog",
    "SupplyChainStep",
    "Event",
    "EventBus",
    "EventStore",
    "ProductRegistered",
    "ProductTransferred",
    "SupplyChainStepAdded",
    "ParticipantAuthorized",
    "RegistryConfig",
    "ConfigManager",
    "load_config",
    "RegistryError",
    "Unauthorized",
    "NotAuthorized",
    "NotFound",
    "NotOwner",
    "RecipientNotAuthorized",
    "SelfTransfer",
    "AlreadyAuthorized",
    "InvalidTarget",
    "AlreadyInitialized",
    "IntegrityError",
]
