import logging

from django.test import SimpleTestCase

from storefront.logging import RequestIdFilter, request_id_var


class RequestContextTests(SimpleTestCase):
    def test_request_id_is_echoed(self):
        response = self.client.get('/missing/', HTTP_X_REQUEST_ID='req-123')
        self.assertEqual(response['X-Request-ID'], 'req-123')
        self.assertEqual(response.json()['requestId'], 'req-123')

    def test_request_id_is_generated(self):
        response = self.client.get('/missing/')
        self.assertEqual(len(response['X-Request-ID']), 32)

    def test_filter_stamps_records(self):
        record = logging.LogRecord('x', logging.INFO, __file__, 1, 'msg', None, None)
        token = request_id_var.set('abc')
        try:
            RequestIdFilter().filter(record)
        finally:
            request_id_var.reset(token)
        self.assertEqual(record.request_id, 'abc')
