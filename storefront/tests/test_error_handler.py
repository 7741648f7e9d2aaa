from django.test import SimpleTestCase


class ErrorHandlerTests(SimpleTestCase):
    def test_unknown_url_returns_json_404(self):
        response = self.client.get('/this-url-does-not-exist/')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["message"], "Not found")
