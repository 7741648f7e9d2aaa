from django.test import SimpleTestCase

from .utils import coerce_amount, format_minor_units


class CoerceAmountTests(SimpleTestCase):
    def test_ints_pass_through(self):
        self.assertEqual(coerce_amount(99800), 99800)

    def test_whole_float_becomes_int(self):
        self.assertEqual(coerce_amount(99800.0), 99800)
        self.assertIsInstance(coerce_amount(99800.0), int)

    def test_fractional_float_never_equals_an_int(self):
        self.assertNotEqual(coerce_amount(998.5), 998)

    def test_bool_and_string_never_equal_an_int(self):
        self.assertNotEqual(coerce_amount(True), 1)
        self.assertNotEqual(coerce_amount("99800"), 99800)

    def test_none_means_not_reported(self):
        self.assertIsNone(coerce_amount(None))


class FormatMinorUnitsTests(SimpleTestCase):
    def test_formats_paise(self):
        self.assertEqual(format_minor_units(99805, "INR"), "INR 998.05")
