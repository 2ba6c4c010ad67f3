from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from treasury.config import settings
from treasury.db import get_db
from treasury.main import app
from treasury.models import Base, Withdrawal, WithdrawalStatus
from treasury.services.action_token_service import issue_action_token

ADMIN = {'Authorization': 'Bearer admin-key', 'x-actor': 'ops@example.com'}
SCHEDULER = {'Authorization': 'Bearer scheduler-key'}
WEBHOOK = {'Authorization': 'Bearer webhook-key'}
TREASURER = 'treasurer@example.com'


class TreasuryRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            'sqlite://',
            poolclass=StaticPool,
            connect_args={'check_same_thread': False},
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        for name, value in (
            ('admin_api_key', 'admin-key'),
            ('scheduler_api_key', 'scheduler-key'),
            ('inbound_webhook_key', 'webhook-key'),
            ('notification_provider', 'stub'),
        ):
            patcher = patch.object(settings, name, value)
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _seed_withdrawals(self, *names: str) -> list[int]:
        with self.SessionLocal() as db:
            rows = [
                Withdrawal(
                    creator_name=name,
                    project_description=f'{name} project',
                    net_amount_cents=25000,
                    currency='USD',
                    status=WithdrawalStatus.APPROVED,
                )
                for name in names
            ]
            db.add_all(rows)
            db.commit()
            return [row.id for row in rows]

    def _configure_treasurer(self, **extra) -> None:
        response = self.client.put(
            '/treasury/settings',
            headers=ADMIN,
            json={'treasurer_email': TREASURER, 'treasurer_name': 'Terry Treasurer', **extra},
        )
        self.assertEqual(response.status_code, 200, response.text)

    def _create_request(self, *names: str) -> dict:
        response = self.client.post(
            '/treasury/requests',
            headers=ADMIN,
            json={'withdrawal_ids': self._seed_withdrawals(*names), 'description': 'Weekly creator payouts'},
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_health_and_security_headers(self) -> None:
        response = self.client.get('/healthz')
        self.assertEqual(response.text, 'ok')
        self.assertEqual(response.headers['x-content-type-options'], 'nosniff')
        self.assertEqual(response.headers['cache-control'], 'no-store')

    def test_api_keys_are_required_and_scoped(self) -> None:
        self.assertEqual(self.client.get('/treasury/requests').status_code, 401)
        self.assertEqual(
            self.client.get('/treasury/requests', headers={'Authorization': 'Bearer nope'}).status_code, 401
        )
        self.assertEqual(self.client.get('/treasury/requests', headers=SCHEDULER).status_code, 403)
        self.assertEqual(self.client.post('/treasury/inbound-email', headers=ADMIN, json={}).status_code, 403)

    def test_create_uses_configured_treasurer(self) -> None:
        self._configure_treasurer()

        created = self._create_request('Ava Martinez', 'Noah Chen')

        self.assertEqual(created['status'], 'pending')
        self.assertEqual(created['total_amount_cents'], 50000)
        self.assertEqual(created['treasurer_email'], TREASURER)
        self.assertEqual(created['created_by'], 'ops@example.com')

    def test_create_without_treasurer_is_rejected(self) -> None:
        response = self.client.post(
            '/treasury/requests',
            headers=ADMIN,
            json={'withdrawal_ids': self._seed_withdrawals('Ava Martinez'), 'description': 'Payouts'},
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn('Treasurer email', response.json()['detail'])

    def test_approval_link_flow(self) -> None:
        self._configure_treasurer()
        created = self._create_request('Ava Martinez')
        request_id = created['id']

        sent = self.client.post(f'/treasury/requests/{request_id}/send-approval', headers=ADMIN)
        self.assertEqual(sent.json(), {'success': True, 'error': None})

        token = issue_action_token(request_id, 'approve')
        link = f'/treasury/requests/{request_id}/action'
        preview = self.client.get(link, params={'action': 'approve', 'token': token})
        self.assertEqual(preview.status_code, 200)
        self.assertEqual(preview.json()['outcome'], 'awaiting_confirmation')
        self.assertEqual(preview.json()['request']['status'], 'pending')
        self.assertEqual(preview.json()['confirm_method'], 'POST')

        response = self.client.post(link, params={'action': 'approve', 'token': token})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'outcome': 'approved'})

        reject_token = issue_action_token(request_id, 'reject')
        again = self.client.post(link, params={'action': 'reject', 'token': reject_token})
        self.assertEqual(again.json(), {'outcome': 'already_decided'})

        detail = self.client.get(f'/treasury/requests/{request_id}', headers=ADMIN).json()
        self.assertEqual(detail['status'], 'approved')
        self.assertEqual(detail['approved_by'], TREASURER)
        self.assertEqual([c['direction'] for c in detail['communications']], ['outbound', 'inbound', 'inbound'])
        self.assertEqual(len(detail['items']), 1)

    def test_invalid_link_is_forbidden(self) -> None:
        self._configure_treasurer()
        request_id = self._create_request('Ava Martinez')['id']

        params = {'action': 'approve', 'token': issue_action_token(request_id + 1, 'approve')}
        opened = self.client.get(f'/treasury/requests/{request_id}/action', params=params)
        response = self.client.post(f'/treasury/requests/{request_id}/action', params=params)

        self.assertEqual(opened.status_code, 403)
        self.assertEqual(response.status_code, 403)
        detail = self.client.get(f'/treasury/requests/{request_id}', headers=ADMIN).json()
        self.assertEqual(detail['status'], 'pending')

    def test_manual_decisions_report_conflicts(self) -> None:
        self._configure_treasurer()
        request_id = self._create_request('Ava Martinez')['id']

        blank = self.client.post(f'/treasury/requests/{request_id}/reject', headers=ADMIN, json={'reason': ' '})
        self.assertEqual(blank.status_code, 400)

        approved = self.client.post(
            f'/treasury/requests/{request_id}/approve', headers=ADMIN, json={'message': 'Approved on call'}
        )
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()['request']['approval_message'], 'Approved on call')

        conflict = self.client.post(
            f'/treasury/requests/{request_id}/reject', headers=ADMIN, json={'reason': 'Too late'}
        )
        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.json()['updated'], False)

        cancel = self.client.post(f'/treasury/requests/{request_id}/cancel', headers=ADMIN)
        self.assertEqual(cancel.status_code, 409)

    def test_unknown_request_is_not_found(self) -> None:
        self.assertEqual(self.client.get('/treasury/requests/404', headers=ADMIN).status_code, 404)
        self.assertEqual(self.client.post('/treasury/requests/404/approve', headers=ADMIN).status_code, 404)

    def test_inbound_email_webhook(self) -> None:
        self._configure_treasurer()
        created = self._create_request('Ava Martinez')

        missing = self.client.post('/treasury/inbound-email', headers=WEBHOOK, json={'from': TREASURER})
        self.assertEqual(missing.status_code, 400)

        response = self.client.post(
            '/treasury/inbound-email',
            headers=WEBHOOK,
            json={
                'from': f'Terry Treasurer <{TREASURER}>',
                'to': 'treasury@notifications.example.com',
                'subject': f"Re: Approval Required: {created['request_number']}",
                'text': 'Approved, go ahead.\n\n> Draw request requires your approval.',
                'messageId': '<reply-1@mail.example.com>',
            },
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body['outcome'], 'approved')
        self.assertEqual(body['parsed_confidence'], 'high')
        self.assertEqual(body['matched_keywords'], ['approved', 'go ahead'])

    def test_auto_send_run_advances_approved_requests(self) -> None:
        self._configure_treasurer(auto_send_enabled=True, auto_send_delay_hours=0)
        request_id = self._create_request('Ava Martinez', 'Noah Chen')['id']
        self.client.post(f'/treasury/requests/{request_id}/approve', headers=ADMIN)

        first = self.client.post('/treasury/auto-send/run', headers=SCHEDULER)
        second = self.client.post('/treasury/auto-send/run', headers=SCHEDULER, params={'max_requests': 5})

        self.assertEqual(first.json(), {'success': True, 'processed': 2, 'failed': 0, 'errors': []})
        self.assertEqual(second.json()['processed'], 0)
        self.assertEqual(
            self.client.post('/treasury/auto-send/run', headers=SCHEDULER, params={'max_requests': 0}).status_code,
            422,
        )

    def test_settings_validation(self) -> None:
        response = self.client.put('/treasury/settings', headers=ADMIN, json={'auto_send_delay_hours': 200})
        self.assertEqual(response.status_code, 400)

        response = self.client.put(
            '/treasury/settings', headers=ADMIN, json={'auto_send_max_amount_cents': 0, 'auto_send_enabled': True}
        )
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()['auto_send_max_amount_cents'])
        self.assertTrue(self.client.get('/treasury/settings', headers=ADMIN).json()['auto_send_enabled'])

    def test_list_filters_by_status_and_payee(self) -> None:
        self._configure_treasurer()
        ava = self._create_request('Ava Martinez')['id']
        noah = self._create_request('Noah Chen')['id']
        self.client.post(f'/treasury/requests/{noah}/approve', headers=ADMIN)

        approved = self.client.get('/treasury/requests', headers=ADMIN, params={'status': 'approved'}).json()
        by_payee = self.client.get('/treasury/requests', headers=ADMIN, params={'payee': 'martinez'}).json()

        self.assertEqual([r['id'] for r in approved], [noah])
        self.assertEqual([r['id'] for r in by_payee], [ava])


if __name__ == '__main__':
    unittest.main()
