from __future__ import annotations

import unittest
from types import SimpleNamespace

from treasury.dependencies import get_client_ip


class ClientIpTests(unittest.TestCase):
    def _request(self, headers: dict, host: str | None = '10.0.0.5') -> SimpleNamespace:
        return SimpleNamespace(headers=headers, client=SimpleNamespace(host=host) if host else None)

    def test_prefers_first_forwarded_hop(self) -> None:
        request = self._request({'x-forwarded-for': '203.0.113.7, 10.0.0.1'})
        self.assertEqual(get_client_ip(request), '203.0.113.7')

    def test_falls_back_to_real_ip_then_peer(self) -> None:
        self.assertEqual(get_client_ip(self._request({'x-real-ip': '198.51.100.2'})), '198.51.100.2')
        self.assertEqual(get_client_ip(self._request({})), '10.0.0.5')
        self.assertIsNone(get_client_ip(self._request({}, host=None)))

    def test_blank_forwarded_header_is_ignored(self) -> None:
        self.assertEqual(get_client_ip(self._request({'x-forwarded-for': ' , 10.0.0.1'})), '10.0.0.5')


if __name__ == '__main__':
    unittest.main()
