from __future__ import annotations

import unittest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy import update

from marketplace.errors import (
    AuditLogImmutable,
    DuplicateReference,
    EmptyReason,
    EmptyReference,
    InvalidTransition,
    OrderNotFound,
    Unauthorized,
)
from marketplace.models import Order, OrderStatus, PaymentAuditAction, UserRole
from marketplace.services import order_update_service, payment_workflow_service
from marketplace.services.order_update_service import update_order_status
from marketplace.services.payment_audit_service import (
    PaymentHistoryStep,
    find_history_violations,
    list_payment_audit,
    replay_payment_history,
)
from marketplace.services.payment_workflow_service import (
    confirm_payment,
    get_audit_log,
    list_client_orders,
    list_pending_payment_orders,
    payment_statistics,
    reject_payment,
    submit_payment_reference,
)
from tests.helpers import Marketplace, make_order, make_user, principal_for


class PaymentReferenceWorkflowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.market = Marketplace()
        self.db = self.market.db
        self.order = make_order(self.db, self.market.client, self.market.supplier, status=OrderStatus.PENDING_PAYMENT)
        self.db.commit()

    def tearDown(self) -> None:
        self.market.close()

    def _actions(self, order_id: int | None = None) -> list[PaymentAuditAction]:
        return [entry.action for entry in list_payment_audit(self.db, order_id or self.order.id)]

    def _submit(self, reference: str, **kwargs) -> Order:
        return submit_payment_reference(self.db, self.order.id, self.market.client_actor, reference, **kwargs)

    def test_submit_moves_to_awaiting_confirmation(self) -> None:
        order = self._submit('REF-1')

        self.assertEqual(order.status, OrderStatus.AWAITING_CONFIRMATION)
        self.assertEqual(order.payment_reference, 'REF-1')
        self.assertIsNotNone(order.payment_submitted_at)
        entries = list_payment_audit(self.db, self.order.id)
        self.assertEqual([entry.action for entry in entries], [PaymentAuditAction.REFERENCE_SUBMITTED])
        self.assertEqual(entries[0].from_status, OrderStatus.PENDING_PAYMENT)
        self.assertEqual(entries[0].to_status, OrderStatus.AWAITING_CONFIRMATION)
        self.assertEqual(entries[0].actor_role, UserRole.CLIENT)
        self.assertEqual(entries[0].meta['previous_reference'], None)

    def test_reject_then_resubmit(self) -> None:
        self._submit('REF-1')

        rejected = reject_payment(self.db, self.order.id, self.market.admin_actor, 'mismatch')

        self.assertEqual(rejected.status, OrderStatus.PENDING_PAYMENT)
        self.assertEqual(rejected.payment_reference, 'REF-1')
        self.assertIsNone(rejected.payment_submitted_at)
        self.assertEqual(rejected.payment_notes, '[Admin Action] Payment reference rejected: mismatch')
        self.assertEqual(
            self._actions(), [PaymentAuditAction.REFERENCE_SUBMITTED, PaymentAuditAction.PAYMENT_REJECTED]
        )

        resubmitted = self._submit('REF-2')

        self.assertEqual(resubmitted.status, OrderStatus.AWAITING_CONFIRMATION)
        self.assertEqual(resubmitted.payment_reference, 'REF-2')
        entries = list_payment_audit(self.db, self.order.id)
        self.assertEqual(
            [entry.action for entry in entries],
            [
                PaymentAuditAction.REFERENCE_SUBMITTED,
                PaymentAuditAction.PAYMENT_REJECTED,
                PaymentAuditAction.REFERENCE_RESUBMITTED,
            ],
        )
        self.assertEqual(entries[1].notes, 'mismatch')
        self.assertEqual(entries[2].meta['previous_reference'], 'REF-1')

    def test_replacing_reference_while_awaiting_review(self) -> None:
        self._submit('REF-1')
        order = self._submit('REF-1B')

        self.assertEqual(order.status, OrderStatus.AWAITING_CONFIRMATION)
        self.assertEqual(order.payment_reference, 'REF-1B')
        self.assertEqual(
            self._actions(), [PaymentAuditAction.REFERENCE_SUBMITTED, PaymentAuditAction.REFERENCE_RESUBMITTED]
        )

    def test_reference_is_trimmed_and_required(self) -> None:
        with self.assertRaises(EmptyReference):
            self._submit('   ')
        order = self._submit('  REF-9  ')
        self.assertEqual(order.payment_reference, 'REF-9')

    def test_duplicate_reference_rejected_whichever_order_came_first(self) -> None:
        other = make_order(self.db, self.market.client, self.market.supplier, status=OrderStatus.PENDING_PAYMENT)
        self.db.commit()
        self._submit('REF-SHARED')

        with self.assertRaises(DuplicateReference):
            submit_payment_reference(self.db, other.id, self.market.client_actor, 'REF-SHARED')
        with self.assertRaises(DuplicateReference):
            submit_payment_reference(self.db, other.id, self.market.client_actor, ' REF-SHARED ')

        self.db.expire_all()
        self.assertEqual(self.db.get(Order, other.id).status, OrderStatus.PENDING_PAYMENT)
        self.assertEqual(self._actions(other.id), [])

    def test_store_rejects_reference_claimed_after_the_read_check(self) -> None:
        other = make_order(self.db, self.market.client, self.market.supplier, status=OrderStatus.PENDING_PAYMENT)
        self.db.commit()
        self._submit('REF-RACE')
        self.db.commit()

        with patch.object(payment_workflow_service, '_reference_in_use', return_value=False):
            with self.assertLogs('marketplace.services.payment_workflow', level='WARNING'):
                with self.assertRaises(DuplicateReference) as ctx:
                    submit_payment_reference(self.db, other.id, self.market.client_actor, 'REF-RACE')

        self.assertEqual(ctx.exception.payment_reference, 'REF-RACE')
        self.db.expire_all()
        stored = self.db.get(Order, other.id)
        self.assertIsNone(stored.payment_reference)
        self.assertEqual(stored.status, OrderStatus.PENDING_PAYMENT)
        self.assertEqual(self._actions(other.id), [])

    def test_confirmation_reference_is_unique_in_the_store(self) -> None:
        other = make_order(
            self.db, self.market.client, self.market.supplier, status=OrderStatus.AWAITING_CONFIRMATION
        )
        self.db.commit()
        self._submit('REF-TAKEN')
        self.db.commit()

        with patch.object(payment_workflow_service, '_reference_in_use', return_value=False):
            with self.assertLogs('marketplace.services.payment_workflow', level='WARNING'):
                with self.assertRaises(DuplicateReference):
                    confirm_payment(self.db, other.id, self.market.admin_actor, reference='REF-TAKEN')

        self.db.expire_all()
        self.assertEqual(self.db.get(Order, other.id).status, OrderStatus.AWAITING_CONFIRMATION)

    def test_same_order_may_resubmit_its_own_reference(self) -> None:
        self._submit('REF-1')
        reject_payment(self.db, self.order.id, self.market.admin_actor, 'amount short')
        order = self._submit('REF-1')
        self.assertEqual(order.status, OrderStatus.AWAITING_CONFIRMATION)

    def test_only_owning_client_submits(self) -> None:
        stranger = principal_for(make_user(self.db, UserRole.CLIENT))
        with self.assertRaises(Unauthorized):
            submit_payment_reference(self.db, self.order.id, stranger, 'REF-1')
        with self.assertRaises(Unauthorized):
            submit_payment_reference(self.db, self.order.id, self.market.admin_actor, 'REF-1')
        self.assertEqual(self._actions(), [])

    def test_submit_requires_payable_status(self) -> None:
        order = make_order(
            self.db, self.market.client, self.market.supplier, status=OrderStatus.PENDING_ADMIN_CONFIRMATION
        )
        with self.assertRaises(InvalidTransition):
            submit_payment_reference(self.db, order.id, self.market.client_actor, 'REF-1')

    def test_submit_unknown_order(self) -> None:
        with self.assertRaises(OrderNotFound):
            submit_payment_reference(self.db, 999, self.market.client_actor, 'REF-1')

    def test_confirm(self) -> None:
        self._submit('REF-1', notes='wired from ops account')

        order = confirm_payment(self.db, self.order.id, self.market.admin_actor)

        self.assertEqual(order.status, OrderStatus.PAYMENT_CONFIRMED)
        self.assertEqual(order.payment_confirmed_by, self.market.admin.id)
        self.assertIsNotNone(order.payment_confirmed_at)
        self.assertEqual(order.payment_reference, 'REF-1')
        self.assertEqual(order.payment_notes, 'wired from ops account')
        entries = list_payment_audit(self.db, self.order.id)
        self.assertEqual(entries[-1].action, PaymentAuditAction.PAYMENT_CONFIRMED)
        self.assertEqual(entries[-1].payment_reference, 'REF-1')

    def test_confirm_is_idempotent(self) -> None:
        self._submit('REF-1')
        confirm_payment(self.db, self.order.id, self.market.admin_actor)
        confirm_payment(self.db, self.order.id, self.market.admin_actor)

        self.assertEqual(self._actions().count(PaymentAuditAction.PAYMENT_CONFIRMED), 1)

    def test_concurrent_confirm_produces_one_audit_entry(self) -> None:
        self._submit('REF-1')
        real_write = order_update_service._conditional_write
        raced = []

        def other_admin_wins(db, order_id, expected_status, payload):
            if not raced:
                raced.append(True)
                # The other admin's confirmation lands first, audit entry included.
                confirm_payment(db, order_id, self.market.admin_actor)
            return real_write(db, order_id, expected_status, payload)

        with patch.object(order_update_service, '_conditional_write', side_effect=other_admin_wins):
            with self.assertLogs('marketplace.services', level='INFO'):
                order = confirm_payment(self.db, self.order.id, self.market.admin_actor)

        self.assertEqual(order.status, OrderStatus.PAYMENT_CONFIRMED)
        self.assertEqual(self._actions().count(PaymentAuditAction.PAYMENT_CONFIRMED), 1)

    def test_confirm_requires_admin(self) -> None:
        self._submit('REF-1')
        with self.assertRaises(Unauthorized):
            confirm_payment(self.db, self.order.id, self.market.client_actor)

    def test_confirm_from_pending_payment_refused(self) -> None:
        with self.assertRaises(InvalidTransition):
            confirm_payment(self.db, self.order.id, self.market.admin_actor)

    def test_dispute_resolved_through_confirmation(self) -> None:
        self.db.execute(update(Order).where(Order.id == self.order.id).values(status=OrderStatus.DISPUTED))
        order = confirm_payment(self.db, self.order.id, self.market.admin_actor, reference='REF-DISPUTE')

        self.assertEqual(order.status, OrderStatus.PAYMENT_CONFIRMED)
        self.assertEqual(order.payment_reference, 'REF-DISPUTE')

    def test_reject_requires_awaiting_confirmation_and_reason(self) -> None:
        with self.assertRaises(InvalidTransition):
            reject_payment(self.db, self.order.id, self.market.admin_actor, 'mismatch')

        self._submit('REF-1')
        with self.assertRaises(EmptyReason):
            reject_payment(self.db, self.order.id, self.market.admin_actor, '  ')
        with self.assertRaises(Unauthorized):
            reject_payment(self.db, self.order.id, self.market.client_actor, 'mismatch')

    def test_reject_appends_to_existing_notes(self) -> None:
        self._submit('REF-1', notes='paid from second account')
        order = reject_payment(self.db, self.order.id, self.market.admin_actor, 'wrong amount')
        self.assertEqual(
            order.payment_notes,
            'paid from second account\n[Admin Action] Payment reference rejected: wrong amount',
        )

    def test_generic_edit_cannot_confirm(self) -> None:
        self._submit('REF-1')
        with self.assertRaises(InvalidTransition):
            update_order_status(self.db, self.order.id, OrderStatus.PAYMENT_CONFIRMED, self.market.admin_actor)
        with self.assertRaises(InvalidTransition):
            update_order_status(self.db, self.order.id, OrderStatus.PENDING_PAYMENT, self.market.admin_actor)
        self.assertEqual(self._actions(), [PaymentAuditAction.REFERENCE_SUBMITTED])


class PaymentAuditLogTests(unittest.TestCase):
    def setUp(self) -> None:
        self.market = Marketplace()
        self.db = self.market.db
        self.order = make_order(self.db, self.market.client, self.market.supplier)
        self.db.commit()

    def tearDown(self) -> None:
        self.market.close()

    def _full_cycle(self) -> None:
        client = self.market.client_actor
        admin = self.market.admin_actor
        submit_payment_reference(self.db, self.order.id, client, 'REF-1')
        reject_payment(self.db, self.order.id, admin, 'mismatch')
        submit_payment_reference(self.db, self.order.id, client, 'REF-2')
        confirm_payment(self.db, self.order.id, admin)

    def test_history_replays_cleanly(self) -> None:
        self._full_cycle()
        steps = replay_payment_history(list_payment_audit(self.db, self.order.id))

        self.assertEqual(find_history_violations(steps), [])
        self.assertEqual(
            [step.to_status for step in steps],
            [
                OrderStatus.AWAITING_CONFIRMATION,
                OrderStatus.PENDING_PAYMENT,
                OrderStatus.AWAITING_CONFIRMATION,
                OrderStatus.PAYMENT_CONFIRMED,
            ],
        )
        stamps = [step.at for step in steps]
        self.assertEqual(stamps, sorted(stamps))
        self.assertEqual(len(set(stamps)), len(stamps))

    def test_confirmation_right_after_rejection_is_flagged(self) -> None:
        self._full_cycle()
        steps = replay_payment_history(list_payment_audit(self.db, self.order.id))

        violations = find_history_violations([steps[0], steps[1], steps[3]])

        self.assertEqual(len(violations), 1)
        self.assertIn('directly after a rejection', violations[0])

    def test_illegal_edge_and_orphan_resubmission_are_flagged(self) -> None:
        now = datetime.now(tz=timezone.utc)
        steps = [
            PaymentHistoryStep(
                now, PaymentAuditAction.REFERENCE_RESUBMITTED, OrderStatus.PENDING_PAYMENT, OrderStatus.AWAITING_CONFIRMATION, 'R'
            ),
            PaymentHistoryStep(
                now, PaymentAuditAction.PAYMENT_CONFIRMED, OrderStatus.PENDING_PAYMENT, OrderStatus.PAYMENT_CONFIRMED, 'R'
            ),
        ]

        violations = find_history_violations(steps)

        self.assertEqual(len(violations), 2)
        self.assertIn('resubmission without an earlier submission', violations[0])
        self.assertIn('illegal edge PENDING_PAYMENT -> PAYMENT_CONFIRMED', violations[1])

    def test_update_is_blocked(self) -> None:
        submit_payment_reference(self.db, self.order.id, self.market.client_actor, 'REF-1')
        entry = list_payment_audit(self.db, self.order.id)[0]

        entry.notes = 'edited'
        with self.assertRaises(AuditLogImmutable):
            self.db.flush()
        self.db.rollback()

        entry = list_payment_audit(self.db, self.order.id)
        self.assertEqual(entry, [])

    def test_delete_is_blocked(self) -> None:
        submit_payment_reference(self.db, self.order.id, self.market.client_actor, 'REF-1')
        self.db.commit()
        entry = list_payment_audit(self.db, self.order.id)[0]

        self.db.delete(entry)
        with self.assertRaises(AuditLogImmutable):
            self.db.flush()
        self.db.rollback()
        self.assertEqual(len(list_payment_audit(self.db, self.order.id)), 1)

    def test_audit_log_visibility(self) -> None:
        submit_payment_reference(self.db, self.order.id, self.market.client_actor, 'REF-1')

        self.assertEqual(len(get_audit_log(self.db, self.order.id, self.market.admin_actor)), 1)
        self.assertEqual(len(get_audit_log(self.db, self.order.id, self.market.client_actor)), 1)
        stranger = principal_for(make_user(self.db, UserRole.CLIENT))
        with self.assertRaises(Unauthorized):
            get_audit_log(self.db, self.order.id, stranger)
        with self.assertRaises(Unauthorized):
            get_audit_log(self.db, self.order.id, self.market.supplier_actor)


class PaymentListingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.market = Marketplace()
        self.db = self.market.db
        client, supplier = self.market.client, self.market.supplier
        make_order(self.db, client, supplier, amount=Decimal('100.00'), status=OrderStatus.PENDING_PAYMENT)
        make_order(self.db, client, supplier, amount=Decimal('200.00'), status=OrderStatus.AWAITING_CONFIRMATION)
        make_order(self.db, client, supplier, amount=Decimal('300.00'), status=OrderStatus.PAYMENT_CONFIRMED)
        make_order(self.db, client, supplier, amount=Decimal('400.00'), status=OrderStatus.DELIVERED)
        make_order(self.db, client, supplier, amount=Decimal('500.00'), status=OrderStatus.CANCELLED)
        self.db.commit()

    def tearDown(self) -> None:
        self.market.close()

    def test_pending_list(self) -> None:
        orders = list_pending_payment_orders(self.db)
        self.assertEqual(sorted(order.amount for order in orders), [Decimal('100.00'), Decimal('200.00')])

    def test_pending_list_paging(self) -> None:
        first = list_pending_payment_orders(self.db, page=1, page_size=1)
        second = list_pending_payment_orders(self.db, page=2, page_size=1)
        self.assertEqual(len(first), 1)
        self.assertEqual(len(second), 1)
        self.assertNotEqual(first[0].id, second[0].id)

    def test_client_orders(self) -> None:
        self.assertEqual(len(list_client_orders(self.db, self.market.client.id)), 5)
        self.assertEqual(list_client_orders(self.db, self.market.supplier.id), [])

    def test_statistics(self) -> None:
        stats = payment_statistics(self.db)

        self.assertEqual((stats.pending_payment.count, stats.pending_payment.amount), (2, Decimal('300.00')))
        self.assertEqual((stats.paid.count, stats.paid.amount), (2, Decimal('700.00')))
        self.assertEqual((stats.total.count, stats.total.amount), (5, Decimal('1500.00')))


if __name__ == '__main__':
    unittest.main()
