from __future__ import annotations

import unittest

from marketplace.errors import Unauthorized
from marketplace.models import OrderStatus
from marketplace.services.audit_service import list_audit_for_entity
from marketplace.services.po_verification_service import verify_purchase_order
from tests.helpers import Marketplace, make_order


class PurchaseOrderVerificationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.market = Marketplace()
        self.db = self.market.db
        self.order = make_order(
            self.db, self.market.client, self.market.supplier, status=OrderStatus.PENDING_ADMIN_CONFIRMATION
        )
        self.db.commit()

    def tearDown(self) -> None:
        self.market.close()

    def test_verification_releases_order_for_payment(self) -> None:
        order = verify_purchase_order(self.db, self.order.id, self.market.admin_actor, ip='192.0.2.10')
        self.db.flush()

        self.assertTrue(order.admin_verified)
        self.assertEqual(order.admin_verified_by, self.market.admin.id)
        self.assertIsNotNone(order.admin_verified_at)
        self.assertEqual(order.status, OrderStatus.PENDING_PAYMENT)
        entries = list_audit_for_entity(self.db, entity_type='order', entity_id=self.order.id)
        self.assertEqual([entry.action for entry in entries], ['PO_VERIFIED'])
        self.assertEqual(entries[0].ip, '192.0.2.10')

    def test_verifying_twice_is_a_no_op(self) -> None:
        first = verify_purchase_order(self.db, self.order.id, self.market.admin_actor)
        second = verify_purchase_order(self.db, self.order.id, self.market.admin_actor)
        self.db.flush()

        self.assertEqual(first.admin_verified_at, second.admin_verified_at)
        self.assertEqual(len(list_audit_for_entity(self.db, entity_type='order', entity_id=self.order.id)), 1)

    def test_verification_later_in_lifecycle_keeps_status(self) -> None:
        order = make_order(self.db, self.market.client, self.market.supplier, status=OrderStatus.PROCESSING)
        verified = verify_purchase_order(self.db, order.id, self.market.admin_actor)

        self.assertTrue(verified.admin_verified)
        self.assertEqual(verified.status, OrderStatus.PROCESSING)

    def test_admin_only(self) -> None:
        for actor in (self.market.client_actor, self.market.supplier_actor):
            with self.subTest(role=actor.role):
                with self.assertRaises(Unauthorized):
                    verify_purchase_order(self.db, self.order.id, actor)


if __name__ == '__main__':
    unittest.main()
