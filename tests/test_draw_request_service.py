from __future__ import annotations

import re
import unittest
from datetime import date, timedelta

from sqlite_case import NOW, TREASURER, SQLiteTestCase

from treasury.models import DrawRequestStatus, WithdrawalStatus
from treasury.services.draw_request_service import (
    DrawRequestFilter,
    approve_draw_request,
    attach_pdf_url,
    cancel_draw_request,
    create_draw_request,
    get_draw_request_by_number,
    list_draw_request_items,
    list_draw_requests,
    reject_draw_request,
)


class CreateDrawRequestTests(SQLiteTestCase):
    def test_total_is_sum_of_item_snapshots(self) -> None:
        first = self.add_withdrawal('Ava Martinez', 125000)
        second = self.add_withdrawal('Noah Chen', 48000, status=WithdrawalStatus.PENDING)

        request = self.add_request(first, second, signers=['cfo@example.com', ' '], due_date=date(2026, 10, 25))

        self.assertEqual(request.status, DrawRequestStatus.PENDING)
        self.assertEqual(request.total_amount_cents, 173000)
        self.assertEqual(request.currency, 'USD')
        self.assertEqual(request.signers, ['cfo@example.com'])
        self.assertRegex(request.request_number, re.compile(r'^DR-20261018-[0-9A-F]{6}$'))
        items = list_draw_request_items(self.db, request_id=request.id)
        self.assertEqual([item.withdrawal_id for item in items], [first.id, second.id])
        self.assertEqual(sum(item.net_amount_cents for item in items), request.total_amount_cents)

    def test_snapshot_survives_withdrawal_edits(self) -> None:
        withdrawal = self.add_withdrawal(amount_cents=5000)
        request = self.add_request(withdrawal)

        withdrawal.net_amount_cents = 9999
        self.db.flush()

        items = list_draw_request_items(self.db, request_id=request.id)
        self.assertEqual(items[0].net_amount_cents, 5000)
        self.assertEqual(self.reload(request).total_amount_cents, 5000)

    def test_withdrawal_cannot_join_two_active_requests(self) -> None:
        withdrawal = self.add_withdrawal()
        self.add_request(withdrawal)

        with self.assertRaisesRegex(ValueError, 'already in an active draw request'):
            self.add_request(withdrawal)

    def test_withdrawal_is_released_when_request_is_cancelled(self) -> None:
        withdrawal = self.add_withdrawal()
        first = self.add_request(withdrawal)
        self.assertTrue(cancel_draw_request(self.db, request_id=first.id, cancelled_by='ops@example.com'))

        second = self.add_request(withdrawal)
        self.assertEqual(second.status, DrawRequestStatus.PENDING)

    def test_rejects_unclaimable_withdrawals(self) -> None:
        processing = self.add_withdrawal(status=WithdrawalStatus.PROCESSING)
        with self.assertRaisesRegex(ValueError, 'pending or approved'):
            self.add_request(processing)

    def test_rejects_missing_or_empty_selection(self) -> None:
        with self.assertRaisesRegex(ValueError, 'at least one'):
            self._create_with_ids([])
        with self.assertRaisesRegex(ValueError, 'not found: 404'):
            self._create_with_ids([404])

    def test_rejects_mixed_currencies(self) -> None:
        usd = self.add_withdrawal(currency='USD')
        eur = self.add_withdrawal('Mia Johnson', currency='EUR')
        with self.assertRaisesRegex(ValueError, 'one currency'):
            self.add_request(usd, eur)

    def test_requires_description_and_treasurer(self) -> None:
        withdrawal = self.add_withdrawal()
        with self.assertRaisesRegex(ValueError, 'Description'):
            self.add_request(withdrawal, description='  ')
        with self.assertRaisesRegex(ValueError, 'Treasurer email'):
            self.add_request(withdrawal, treasurer_email='')

    def test_lookup_by_number_is_case_insensitive(self) -> None:
        request = self.add_request()
        found = get_draw_request_by_number(self.db, request_number=request.request_number.lower())
        self.assertEqual(found.id, request.id)

    def _create_with_ids(self, ids: list[int]):
        return create_draw_request(
            self.db,
            withdrawal_ids=ids,
            description='Payouts',
            treasurer_email=TREASURER,
            created_by='ops@example.com',
        )


class TransitionTests(SQLiteTestCase):
    def test_approve_sets_decision_fields(self) -> None:
        request = self.add_request()

        self.assertTrue(
            approve_draw_request(self.db, request_id=request.id, approved_by=TREASURER, message=' Go ahead ', now=NOW)
        )

        current = self.reload(request)
        self.assertEqual(current.status, DrawRequestStatus.APPROVED)
        self.assertEqual(current.approved_by, TREASURER)
        self.assertEqual(current.approval_message, 'Go ahead')
        self.assertIsNotNone(current.approved_at)
        self.assertIsNone(current.rejected_at)

    def test_reject_after_approve_is_a_no_op(self) -> None:
        request = self.add_request()
        self.assertTrue(approve_draw_request(self.db, request_id=request.id, approved_by=TREASURER))

        self.assertFalse(reject_draw_request(self.db, request_id=request.id, rejected_by=TREASURER, reason='Too late'))

        current = self.reload(request)
        self.assertEqual(current.status, DrawRequestStatus.APPROVED)
        self.assertIsNone(current.rejected_at)
        self.assertIsNone(current.rejection_reason)

    def test_second_approval_reports_no_update(self) -> None:
        request = self.add_request()
        self.assertTrue(approve_draw_request(self.db, request_id=request.id, approved_by=TREASURER))
        self.assertFalse(approve_draw_request(self.db, request_id=request.id, approved_by='someone@example.com'))
        self.assertEqual(self.reload(request).approved_by, TREASURER)

    def test_reject_requires_reason(self) -> None:
        request = self.add_request()
        with self.assertRaisesRegex(ValueError, 'reason'):
            reject_draw_request(self.db, request_id=request.id, rejected_by=TREASURER, reason='   ')
        self.assertStatus(request, DrawRequestStatus.PENDING)

    def test_reject_stores_reason(self) -> None:
        request = self.add_request()
        self.assertTrue(reject_draw_request(self.db, request_id=request.id, rejected_by=TREASURER, reason='Wrong totals'))
        current = self.reload(request)
        self.assertEqual(current.status, DrawRequestStatus.REJECTED)
        self.assertEqual(current.rejection_reason, 'Wrong totals')

    def test_cancelled_request_cannot_be_approved(self) -> None:
        request = self.add_request()
        self.assertTrue(cancel_draw_request(self.db, request_id=request.id, cancelled_by='ops@example.com'))
        self.assertFalse(approve_draw_request(self.db, request_id=request.id, approved_by=TREASURER))
        self.assertStatus(request, DrawRequestStatus.CANCELLED)

    def test_unknown_request_reports_no_update(self) -> None:
        self.assertFalse(approve_draw_request(self.db, request_id=999, approved_by=TREASURER))

    def test_attach_pdf_url(self) -> None:
        request = self.add_request()
        attach_pdf_url(self.db, request_id=request.id, pdf_url='https://files.example.com/dr.pdf')
        self.assertEqual(self.reload(request).pdf_url, 'https://files.example.com/dr.pdf')
        with self.assertRaises(ValueError):
            attach_pdf_url(self.db, request_id=999, pdf_url='https://files.example.com/x.pdf')


class ListDrawRequestTests(SQLiteTestCase):
    def test_filters_by_payee_status_and_dates(self) -> None:
        ava = self.add_request(self.add_withdrawal('Ava Martinez'), due_date=date(2026, 10, 20))
        noah = self.add_request(
            self.add_withdrawal('Noah Chen'), now=NOW - timedelta(days=3), due_date=date(2026, 11, 1)
        )
        approve_draw_request(self.db, request_id=noah.id, approved_by=TREASURER)

        by_payee = list_draw_requests(self.db, filters=DrawRequestFilter(payee='martinez'))
        self.assertEqual([r.id for r in by_payee], [ava.id])

        approved = list_draw_requests(self.db, filters=DrawRequestFilter(status=DrawRequestStatus.APPROVED))
        self.assertEqual([r.id for r in approved], [noah.id])

        recent = list_draw_requests(self.db, filters=DrawRequestFilter(created_from=date(2026, 10, 17)))
        self.assertEqual([r.id for r in recent], [ava.id])

        due_soon = list_draw_requests(self.db, filters=DrawRequestFilter(due_to=date(2026, 10, 31)))
        self.assertEqual([r.id for r in due_soon], [ava.id])

    def test_newest_first_with_paging(self) -> None:
        older = self.add_request(now=NOW - timedelta(days=1))
        newer = self.add_request(self.add_withdrawal('Noah Chen'))

        self.assertEqual([r.id for r in list_draw_requests(self.db)], [newer.id, older.id])
        self.assertEqual([r.id for r in list_draw_requests(self.db, limit=1, offset=1)], [older.id])


if __name__ == '__main__':
    unittest.main()
