from unittest.mock import patch

from django.db import OperationalError
from django.test import SimpleTestCase, TestCase


class LivenessTests(SimpleTestCase):
    def test_live_without_touching_the_database(self):
        response = self.client.get('/health/live')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertGreaterEqual(response.json()["uptime"], 0)

    def test_post_is_not_allowed(self):
        self.assertEqual(self.client.post('/health/live').status_code, 405)


class ReadinessTests(TestCase):
    def test_ready_when_database_reachable(self):
        response = self.client.get('/health/ready')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ready"})

    def test_not_ready_when_database_down(self):
        with patch('django.db.connection.ensure_connection', side_effect=OperationalError("unable to open database file")):
            with self.assertLogs('storefront.views', level='ERROR'):
                response = self.client.get('/health/ready')
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json(), {"status": "not-ready"})
