"""Tests for distribution assignments and tracking."""

import re
from datetime import timedelta

import pytest
from bson import ObjectId

from distribution import (
    DistributionService,
    apply_status,
    days_until_delivery,
    generate_tracking_number,
    is_overdue,
)
from errors import (
    DuplicateDistribution,
    IllegalTransition,
    NotFoundError,
    OrderNotReady,
    ValidationError,
)
from orders import OrderService
from utils import utcnow

LOCATION = {"name": "CS Department Office"}


@pytest.fixture
def service(db):
    return DistributionService(db)


@pytest.fixture
def courier(make_user):
    return make_user(name="Courier")


@pytest.fixture
def confirmed_order(db, make_product, place_order):
    order = place_order("u1", make_product(), quantity=2)
    return OrderService(db).advance_status(str(order["_id"]), "confirmed")


@pytest.fixture
def dist(service, confirmed_order, courier, future):
    return service.create_assignment(str(confirmed_order["_id"]), courier, LOCATION, future)


def walk(service, dist, *statuses):
    did = str(dist["_id"])
    for status in statuses:
        dist = service.update_status(did, status)
    return dist


class TestCreateAssignment:
    def test_pending_order_not_ready(self, service, make_product, place_order, courier, future):
        order = place_order("u1", make_product())
        with pytest.raises(OrderNotReady):
            service.create_assignment(str(order["_id"]), courier, LOCATION, future)

    def test_creates_pending_distribution(self, dist, confirmed_order):
        assert dist["status"] == "pending"
        assert dist["order_id"] == str(confirmed_order["_id"])
        assert len(dist["items"]) == 1
        assert dist["items"][0]["quantity"] == 2
        assert dist["items"][0]["status"] == "pending"
        assert len(dist["timeline"]) == 1

    def test_order_moves_to_processing(self, db, dist, confirmed_order, courier):
        order = OrderService(db).get_order(str(confirmed_order["_id"]))
        assert order["status"] == "processing"
        assert order["distribution"]["status"] == "assigned"
        assert order["distribution"]["assigned_to"] == courier
        assert order["distribution"]["location"] == LOCATION["name"]

    def test_duplicate_rejected(self, service, dist, confirmed_order, courier, future):
        with pytest.raises(DuplicateDistribution):
            service.create_assignment(str(confirmed_order["_id"]), courier, LOCATION, future)

    def test_cancelled_distribution_still_blocks(self, service, dist, confirmed_order, courier, future):
        service.cancel(str(dist["_id"]), "Courier unavailable")
        with pytest.raises(DuplicateDistribution):
            service.create_assignment(str(confirmed_order["_id"]), courier, LOCATION, future)

    def test_unknown_assignee(self, service, confirmed_order, future):
        with pytest.raises(NotFoundError):
            service.create_assignment(str(confirmed_order["_id"]), str(ObjectId()), LOCATION, future)

    def test_assignee_notified(self, db, dist, courier):
        assert db["notification"].count_documents({"user_id": courier, "type": "distribution"}) == 1

    def test_list_assignments(self, service, dist, courier):
        listing = service.list_assignments(courier)
        assert listing["pagination"]["total"] == 1
        assert listing["distributions"][0]["can_cancel"] is True


class TestTracking:
    def test_tracking_number_format(self):
        assert re.fullmatch(r"TRK-\d{6}-[0-9A-Z]{4}", generate_tracking_number())

    def test_issued_on_first_transit(self, service, dist):
        ready = walk(service, dist, "assigned", "ready")
        assert not ready["tracking"].get("tracking_number")
        moving = service.update_status(str(dist["_id"]), "in_transit")
        assert moving["tracking"]["tracking_number"].startswith("TRK-")
        assert moving["actual_date"] is not None

    def test_not_regenerated_on_reentry(self, service, dist):
        first = walk(service, dist, "assigned", "ready", "in_transit")
        number = first["tracking"]["tracking_number"]
        again = walk(service, first, "ready", "in_transit")
        assert again["tracking"]["tracking_number"] == number
        assert again["actual_date"] == first["actual_date"]

    def test_preassigned_number_kept(self):
        doc = {"status": "ready", "tracking": {"tracking_number": "EXT-1"}}
        apply_status(doc, "in_transit")
        assert doc["tracking"]["tracking_number"] == "EXT-1"

    def test_every_change_logged(self, service, dist):
        moved = walk(service, dist, "assigned", "ready")
        assert [e["status"] for e in moved["timeline"]] == ["pending", "assigned", "ready"]
        assert moved["timeline"][-1]["note"]


class TestTransitions:
    def test_skip_rejected(self, service, dist):
        with pytest.raises(IllegalTransition):
            service.update_status(str(dist["_id"]), "in_transit")
        assert service.get_distribution(str(dist["_id"]))["status"] == "pending"

    def test_delivered_mirrors_order(self, db, service, dist, confirmed_order):
        delivered = walk(service, dist, "assigned", "ready", "in_transit", "delivered")
        assert delivered["tracking"]["actual_delivery"] is not None

        order = OrderService(db).get_order(str(confirmed_order["_id"]))
        assert order["status"] == "delivered"
        assert order["distribution"]["status"] == "delivered"
        assert order["timeline"][-1]["status"] == "delivered"

    def test_delivered_is_terminal(self, service, dist):
        walk(service, dist, "assigned", "ready", "in_transit", "delivered")
        with pytest.raises(IllegalTransition):
            service.update_status(str(dist["_id"]), "ready")


class TestItemsAndProof:
    def test_item_status(self, service, dist):
        item_id = dist["items"][0]["item_id"]
        updated = service.update_item_status(str(dist["_id"]), item_id, "packed", notes="Boxed")
        assert updated["items"][0]["status"] == "packed"
        assert updated["items"][0]["notes"] == "Boxed"

    def test_unknown_item(self, service, dist):
        with pytest.raises(NotFoundError):
            service.update_item_status(str(dist["_id"]), "missing", "packed")

    def test_bad_item_status(self, service, dist):
        with pytest.raises(ValidationError):
            service.update_item_status(str(dist["_id"]), dist["items"][0]["item_id"], "lost")

    def test_delivery_proof_completes(self, db, service, dist, confirmed_order, courier):
        proof = {"received_by": {"name": "Asha", "phone": "9999999999"}, "signature": "sig"}
        done = service.record_delivery_proof(str(dist["_id"]), proof, actor=courier)

        assert done["status"] == "delivered"
        assert done["delivery_proof"]["received_by"]["name"] == "Asha"
        assert done["delivery_proof"]["delivered_by"] == courier
        assert OrderService(db).get_order(str(confirmed_order["_id"]))["status"] == "delivered"

    def test_proof_on_cancelled_rejected(self, service, dist):
        service.cancel(str(dist["_id"]), "Order withdrawn")
        proof = {"received_by": {"name": "Asha", "phone": "9999999999"}}
        with pytest.raises(IllegalTransition):
            service.record_delivery_proof(str(dist["_id"]), proof)


class TestCancel:
    def test_reason_required(self, service, dist):
        with pytest.raises(ValidationError):
            service.cancel(str(dist["_id"]), "no")

    def test_cancel_from_ready(self, service, dist):
        walk(service, dist, "assigned", "ready")
        cancelled = service.cancel(str(dist["_id"]), "Student graduated")
        assert cancelled["status"] == "cancelled"
        assert "Student graduated" in cancelled["timeline"][-1]["note"]

    def test_cannot_cancel_in_transit(self, service, dist):
        walk(service, dist, "assigned", "ready", "in_transit")
        with pytest.raises(IllegalTransition):
            service.cancel(str(dist["_id"]), "Too late now")


class TestSchedule:
    def test_overdue_and_days(self):
        now = utcnow()
        late = {"status": "ready", "scheduled_date": now - timedelta(days=1)}
        soon = {"status": "ready", "scheduled_date": now + timedelta(hours=30)}
        done = {"status": "delivered", "scheduled_date": now - timedelta(days=1)}
        assert is_overdue(late, now)
        assert not is_overdue(soon, now)
        assert not is_overdue(done, now)
        assert days_until_delivery(soon, now) == 2

    def test_overdue_query_and_statistics(self, service, dist, make_product, place_order, db, courier):
        order = place_order("u2", make_product(name="Mug"))
        OrderService(db).advance_status(str(order["_id"]), "confirmed")
        service.create_assignment(str(order["_id"]), courier, LOCATION, utcnow() - timedelta(days=2))

        overdue = service.overdue()
        assert len(overdue) == 1
        assert overdue[0]["order_id"] == str(order["_id"])

        stats = service.statistics()
        assert stats["status_breakdown"]["pending"] == 2
        assert stats["status_breakdown"]["delivered"] == 0
        assert stats["overdue"] == 1
