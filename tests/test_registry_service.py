"""
RegistryService tests.

Covers the three core operations (register, transfer, verify), their
failure modes, atomicity of each unit, and the read helpers built on top.
"""

import dataclasses
import json
from decimal import Decimal

import pytest

from custody.config import RegistryConfig
from custody.errors import (
    AlreadyAuthorized,
    IntegrityError,
    NotAuthorized,
    NotFound,
    NotOwner,
    RecipientNotAuthorized,
    SelfTransfer,
    Unauthorized,
)
from custody.events import (
    ParticipantAuthorized,
    ProductRegistered,
    ProductTransferred,
    SupplyChainStepAdded,
)
from custody.registry import RegistryService

ADMIN = "0xadmin"
FACTORY = "0xfactory"
SUPPLIER = "0xsupplier"
DISTRIBUTOR = "0xdistributor"
RETAILER = "0xretailer"
OUTSIDER = "0xoutsider"


def _register(registry, caller=FACTORY, name="Shirt"):
    return registry.register_product(caller, name, "Cotton", "India", 100, ["organic"])


# ─────────────────────────────────────────────────────────────────────────────
# registerProduct
# ─────────────────────────────────────────────────────────────────────────────


class TestRegisterProduct:

    def test_shirt_registration_is_verifiable(self, supply_chain):
        pid = supply_chain.register_product(FACTORY, "Shirt", "Cotton", "India", 100, ["organic"])
        assert pid == 1

        product, history = supply_chain.verify_product(pid)
        assert product.current_owner == product.manufacturer == FACTORY
        assert product.is_authentic is True
        assert product.certifications == ("organic",)
        assert len(history) == 1
        assert history[0].action == "Product Manufactured"
        assert history[0].notes == "Initial product registration"
        assert history[0].participant == FACTORY
        assert history[0].role == "manufacturer"
        assert history[0].location == "India"

    def test_ids_are_sequential_without_gaps(self, supply_chain):
        ids = [_register(supply_chain, name=f"item-{i}") for i in range(10)]
        assert ids == list(range(1, 11))
        assert supply_chain.get_total_products() == 10

    def test_total_counts_only_successful_registrations(self, supply_chain):
        _register(supply_chain)
        with pytest.raises(NotAuthorized):
            _register(supply_chain, caller=OUTSIDER)
        with pytest.raises(TypeError):
            supply_chain.register_product(FACTORY, "Shirt", "Cotton", "India", 9.99)
        _register(supply_chain)
        assert supply_chain.get_total_products() == 2
        assert _register(supply_chain) == 3

    def test_unauthorized_caller_rejected(self, registry):
        with pytest.raises(NotAuthorized):
            _register(registry, caller=OUTSIDER)
        assert registry.get_total_products() == 0

    def test_admin_may_register(self, registry):
        pid = _register(registry, caller=ADMIN)
        assert registry.get_product_history(pid)[0].role == "admin"

    @pytest.mark.parametrize("price", [100, 0, Decimal("19.99")])
    def test_accepted_prices(self, supply_chain, price):
        pid = supply_chain.register_product(FACTORY, "Shirt", "Cotton", "India", price)
        assert supply_chain.get_product(pid).price == price

    @pytest.mark.parametrize("price", [9.99, "100", True, None])
    def test_rejected_price_types(self, supply_chain, price):
        with pytest.raises(TypeError):
            supply_chain.register_product(FACTORY, "Shirt", "Cotton", "India", price)

    @pytest.mark.parametrize("field, args", [
        ("name", (1.5, "Cotton", "India")),
        ("material_type", ("Shirt", None, "India")),
        ("origin", ("Shirt", "Cotton", 91)),
    ])
    def test_rejected_text_field_types(self, supply_chain, field, args):
        with pytest.raises(TypeError, match=field):
            supply_chain.register_product(FACTORY, *args, 100)
        assert supply_chain.get_total_products() == 0
        assert supply_chain.export_registry()["products"] == []

    def test_non_finite_decimal_price_rejected(self, supply_chain):
        with pytest.raises(ValueError):
            supply_chain.register_product(FACTORY, "Shirt", "Cotton", "India", Decimal("NaN"))

    def test_failed_history_initialize_leaves_no_product(self, supply_chain):
        def boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        supply_chain.history.initialize = boom
        with pytest.raises(RuntimeError):
            _register(supply_chain)

        assert supply_chain.get_total_products() == 0
        assert not supply_chain.products.exists(1)
        with pytest.raises(NotFound):
            supply_chain.verify_product(1)
        assert supply_chain.notifications("product-1") == []

        del supply_chain.history.initialize
        assert _register(supply_chain) == 1

    def test_genesis_step_labels_come_from_config(self):
        config = RegistryConfig()
        config.registry.genesis_action.set("Harvested")
        config.registry.genesis_notes.set("first lot")
        registry = RegistryService(ADMIN, config=config)
        pid = _register(registry, caller=ADMIN)

        step = registry.get_product_history(pid)[0]
        assert (step.action, step.notes) == ("Harvested", "first lot")


# ─────────────────────────────────────────────────────────────────────────────
# transferProduct
# ─────────────────────────────────────────────────────────────────────────────


class TestTransferProduct:

    def test_round_trip(self, supply_chain, shirt_id):
        step = supply_chain.transfer_product(FACTORY, shirt_id, SUPPLIER, "Mumbai", "Shipped", "by sea")
        assert step.sequence == 1
        assert step.participant == FACTORY
        assert step.role == "manufacturer"

        with pytest.raises(NotOwner):
            supply_chain.transfer_product(FACTORY, shirt_id, DISTRIBUTOR, "Mumbai", "Shipped")

        supply_chain.transfer_product(SUPPLIER, shirt_id, DISTRIBUTOR, "Rotterdam", "Received")
        product, history = supply_chain.verify_product(shirt_id)

        assert product.current_owner == DISTRIBUTOR
        assert product.manufacturer == FACTORY
        assert len(history) == 3
        assert [s.participant for s in history] == [FACTORY, FACTORY, SUPPLIER]
        assert [s.role for s in history] == ["manufacturer", "manufacturer", "supplier"]
        assert history[1].notes == "by sea"
        assert history[2].notes == ""

    def test_self_transfer(self, supply_chain, shirt_id):
        with pytest.raises(SelfTransfer):
            supply_chain.transfer_product(FACTORY, shirt_id, FACTORY, "India", "Moved")
        assert len(supply_chain.get_product_history(shirt_id)) == 1

    def test_unauthorized_recipient_leaves_state_unchanged(self, supply_chain, shirt_id):
        before_product, before_history = supply_chain.verify_product(shirt_id)
        before_events = len(supply_chain.notifications())

        with pytest.raises(RecipientNotAuthorized):
            supply_chain.transfer_product(FACTORY, shirt_id, OUTSIDER, "India", "Shipped")

        after_product, after_history = supply_chain.verify_product(shirt_id)
        assert after_product == before_product
        assert after_history == before_history
        assert len(supply_chain.notifications()) == before_events

    def test_unauthorized_caller(self, supply_chain, shirt_id):
        with pytest.raises(NotAuthorized):
            supply_chain.transfer_product(OUTSIDER, shirt_id, SUPPLIER, "India", "Shipped")

    @pytest.mark.parametrize("product_id", [0, 2, -1])
    def test_unknown_product(self, supply_chain, shirt_id, product_id):
        with pytest.raises(NotFound):
            supply_chain.transfer_product(FACTORY, product_id, SUPPLIER, "India", "Shipped")

    @pytest.mark.parametrize("field, args", [
        ("location", (7, "Shipped", "")),
        ("action", ("Mumbai", None, "")),
        ("notes", ("Mumbai", "Shipped", 1.5)),
    ])
    def test_rejected_step_field_types(self, supply_chain, shirt_id, field, args):
        with pytest.raises(TypeError, match=field):
            supply_chain.transfer_product(FACTORY, shirt_id, SUPPLIER, *args)
        assert supply_chain.get_product(shirt_id).current_owner == FACTORY
        assert len(supply_chain.get_product_history(shirt_id)) == 1

    @pytest.mark.parametrize("product_id", [True, 1.0, "1"])
    def test_non_int_product_id_is_not_found(self, supply_chain, shirt_id, product_id):
        with pytest.raises(NotFound):
            supply_chain.transfer_product(FACTORY, product_id, SUPPLIER, "India", "Shipped")

        assert supply_chain.get_product(shirt_id).current_owner == FACTORY
        assert supply_chain.notifications(f"product-{product_id}") == []
        with pytest.raises(NotFound):
            supply_chain.verify_product(product_id)
        with pytest.raises(NotFound):
            supply_chain.get_product(product_id)
        with pytest.raises(NotFound):
            supply_chain.get_product_history(product_id)

    def test_failed_append_restores_owner(self, supply_chain, shirt_id, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("history unavailable")

        monkeypatch.setattr(supply_chain.history, "append", boom)
        with pytest.raises(RuntimeError):
            supply_chain.transfer_product(FACTORY, shirt_id, SUPPLIER, "India", "Shipped")

        assert supply_chain.get_product(shirt_id).current_owner == FACTORY
        assert len(supply_chain.get_product_history(shirt_id)) == 1
        assert supply_chain.get_statistics()["total_transfers"] == 0

    def test_history_is_append_only(self, supply_chain, shirt_id):
        holders = [FACTORY, SUPPLIER, DISTRIBUTOR, RETAILER]
        observed = [supply_chain.get_product_history(shirt_id)]
        for src, dst in zip(holders, holders[1:]):
            supply_chain.transfer_product(src, shirt_id, dst, "hub", "Handover")
            observed.append(supply_chain.get_product_history(shirt_id))

        for earlier, later in zip(observed, observed[1:]):
            assert later[:len(earlier)] == earlier
            assert len(later) == len(earlier) + 1

    def test_returned_history_cannot_mutate_store(self, supply_chain, shirt_id):
        _, history = supply_chain.verify_product(shirt_id)
        history.append(history[0])
        history.clear()
        assert len(supply_chain.get_product_history(shirt_id)) == 1


# ─────────────────────────────────────────────────────────────────────────────
# authorizeParticipant
# ─────────────────────────────────────────────────────────────────────────────


class TestAuthorizeParticipant:

    def test_second_authorization_keeps_first_role(self, registry):
        registry.authorize_participant(ADMIN, SUPPLIER, "supplier")
        with pytest.raises(AlreadyAuthorized):
            registry.authorize_participant(ADMIN, SUPPLIER, "retailer")
        assert registry.get_participant(SUPPLIER).role == "supplier"

    def test_only_admin_authorizes(self, supply_chain):
        with pytest.raises(Unauthorized):
            supply_chain.authorize_participant(FACTORY, OUTSIDER, "retailer")
        assert not supply_chain.is_authorized(OUTSIDER)

    def test_get_participant_unknown(self, registry):
        with pytest.raises(NotAuthorized):
            registry.get_participant(OUTSIDER)

    def test_list_participants(self, supply_chain):
        identities = [p.identity for p in supply_chain.list_participants()]
        assert identities == [ADMIN, FACTORY, SUPPLIER, DISTRIBUTOR, RETAILER]


# ─────────────────────────────────────────────────────────────────────────────
# Notifications
# ─────────────────────────────────────────────────────────────────────────────


class TestNotifications:

    def test_registration_emits_in_order(self, supply_chain):
        seen = []
        supply_chain.subscribe()(seen.append)
        pid = _register(supply_chain)

        assert [type(e) for e in seen] == [ProductRegistered, SupplyChainStepAdded]
        assert (seen[0].product_id, seen[0].name, seen[0].manufacturer) == (pid, "Shirt", FACTORY)
        assert (seen[1].actor, seen[1].action) == (FACTORY, "Product Manufactured")

    def test_transfer_emits_in_order(self, supply_chain, shirt_id):
        seen = []
        supply_chain.subscribe(ProductTransferred, SupplyChainStepAdded)(seen.append)
        supply_chain.transfer_product(FACTORY, shirt_id, SUPPLIER, "Mumbai", "Shipped")

        assert [type(e) for e in seen] == [ProductTransferred, SupplyChainStepAdded]
        assert (seen[0].previous_owner, seen[0].new_owner) == (FACTORY, SUPPLIER)
        assert (seen[1].actor, seen[1].action) == (FACTORY, "Shipped")

    def test_handler_sees_committed_state(self, supply_chain, shirt_id):
        owners = []

        @supply_chain.subscribe(ProductTransferred)
        def on_transfer(event):
            product, history = supply_chain.verify_product(event.product_id)
            owners.append((product.current_owner, len(history)))

        supply_chain.transfer_product(FACTORY, shirt_id, SUPPLIER, "Mumbai", "Shipped")
        assert owners == [(SUPPLIER, 2)]

    def test_failing_handler_does_not_undo_transfer(self, supply_chain, shirt_id):
        @supply_chain.subscribe(ProductTransferred)
        def broken(event):
            raise RuntimeError("observer crashed")

        supply_chain.transfer_product(FACTORY, shirt_id, SUPPLIER, "Mumbai", "Shipped")
        assert supply_chain.get_product(shirt_id).current_owner == SUPPLIER
        assert supply_chain.event_bus.metrics["error_count"] == 1

    def test_recorded_streams(self, supply_chain, shirt_id):
        supply_chain.transfer_product(FACTORY, shirt_id, SUPPLIER, "Mumbai", "Shipped")

        product_events = supply_chain.notifications(f"product-{shirt_id}")
        assert [e.event_type for e in product_events] == [
            "ProductRegistered",
            "SupplyChainStepAdded",
            "ProductTransferred",
            "SupplyChainStepAdded",
        ]
        participants = supply_chain.notifications("participants")
        assert all(isinstance(e, ParticipantAuthorized) for e in participants)
        assert [e.participant for e in participants] == [FACTORY, SUPPLIER, DISTRIBUTOR, RETAILER]
        assert len(supply_chain.notifications()) == 8

    def test_recording_can_be_disabled(self):
        config = RegistryConfig()
        config.events.record_notifications.set(False)
        registry = RegistryService(ADMIN, config=config)
        seen = []
        registry.subscribe()(seen.append)

        registry.authorize_participant(ADMIN, FACTORY, "manufacturer")
        assert len(seen) == 1
        assert registry.notifications() == []


# ─────────────────────────────────────────────────────────────────────────────
# Reads and integrity
# ─────────────────────────────────────────────────────────────────────────────


class TestReads:

    def test_verify_unknown_product(self, registry):
        with pytest.raises(NotFound):
            registry.verify_product(1)
        with pytest.raises(NotFound):
            registry.get_product(0)
        with pytest.raises(NotFound):
            registry.get_product_history(1)

    def test_is_authorized_never_raises(self, registry):
        assert registry.is_authorized(ADMIN) is True
        assert registry.is_authorized(OUTSIDER) is False
        assert registry.get_total_products() == 0

    def test_ownership_queries(self, supply_chain, shirt_id):
        second = _register(supply_chain, name="Scarf")
        supply_chain.transfer_product(FACTORY, second, RETAILER, "Paris", "Sold")

        assert [p.id for p in supply_chain.products_owned_by(FACTORY)] == [shirt_id]
        assert [p.id for p in supply_chain.products_owned_by(RETAILER)] == [second]
        assert [p.id for p in supply_chain.products_manufactured_by(FACTORY)] == [shirt_id, second]
        assert supply_chain.products_owned_by(OUTSIDER) == []

    def test_statistics(self, supply_chain, shirt_id):
        supply_chain.transfer_product(FACTORY, shirt_id, SUPPLIER, "Mumbai", "Shipped")
        stats = supply_chain.get_statistics()

        assert stats["total_products"] == 1
        assert stats["total_participants"] == 5
        assert stats["participants_by_role"]["manufacturer"] == 1
        assert stats["participants_by_role"]["admin"] == 1
        assert stats["total_history_steps"] == 2
        assert stats["total_transfers"] == 1
        assert stats["recorded_notifications"] == 8

    def test_export_is_json_compatible(self, supply_chain, shirt_id):
        exported = supply_chain.export_registry()
        assert exported["admin"] == ADMIN
        assert exported["total_products"] == 1
        assert exported["products"][0]["price"] == "100"
        assert exported["products"][0]["history"][0]["action"] == "Product Manufactured"
        json.dumps(exported)

    def test_audit_reports_valid_chain(self, supply_chain, shirt_id):
        audit = supply_chain.audit_product(shirt_id)
        assert audit.chain_valid is True
        assert audit.first_invalid_index is None
        assert audit.head_digest == audit.history[-1].digest

    def test_tampered_history_detected(self, supply_chain, shirt_id):
        supply_chain.transfer_product(FACTORY, shirt_id, SUPPLIER, "Mumbai", "Shipped")
        steps = supply_chain.history._logs[shirt_id]
        steps[0] = dataclasses.replace(steps[0], location="Bangladesh")

        audit = supply_chain.audit_product(shirt_id)
        assert audit.chain_valid is False
        assert audit.first_invalid_index == 0

        # verification is off by default
        supply_chain.verify_product(shirt_id)

        supply_chain.config.registry.verify_history_on_read.set(True)
        with pytest.raises(IntegrityError) as exc:
            supply_chain.verify_product(shirt_id)
        assert exc.value.details["first_invalid_index"] == 0
