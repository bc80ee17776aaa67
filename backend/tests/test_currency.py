import unittest
from decimal import Decimal
from unittest import mock

import currency


class RoundingTests(unittest.TestCase):
    def test_half_even_at_minor_unit(self) -> None:
        self.assertEqual(currency.round_for_display(Decimal("2.675"), "USD"), Decimal("2.68"))
        self.assertEqual(currency.round_for_display(Decimal("2.665"), "USD"), Decimal("2.66"))
        self.assertEqual(currency.round_for_display(Decimal("0.125"), "EUR"), Decimal("0.12"))

    def test_zero_decimal_currencies(self) -> None:
        self.assertEqual(currency.format_currency(2.5, "JPY", "ja-JP"), "¥2")
        self.assertEqual(currency.format_currency(3.5, "JPY", "ja-JP"), "¥4")
        self.assertEqual(currency.format_currency(1234.5, "KRW", "en-US"), "₩1,234")

    def test_iso_minor_units(self) -> None:
        self.assertEqual(currency.currency_precision("CHF"), 2)
        self.assertEqual(currency.currency_precision(""), 2)
        self.assertEqual(currency.currency_precision("kwd"), 3)
        self.assertEqual(currency.currency_precision("VND"), 0)
        self.assertEqual(currency.currency_precision("CLF"), 4)

    def test_three_decimal_currencies(self) -> None:
        self.assertEqual(currency.format_currency(1.2346, "KWD", "en-US"), "KWD\u00a01.235")
        self.assertEqual(currency.round_for_display(Decimal("1.2345"), "BHD"), Decimal("1.234"))
        self.assertEqual(currency.format_currency(10, "BHD", "en-US"), "BHD\u00a010.000")

    def test_zero_decimal_currencies_outside_symbol_table(self) -> None:
        self.assertEqual(currency.format_currency(25000.5, "VND", "en-US"), "VND\u00a025,000")
        self.assertEqual(currency.format_currency(999.5, "CLP", "en-US"), "CLP\u00a01,000")
        self.assertEqual(currency.format_currency(1234.4, "ISK", "de-DE"), "1.234\u00a0ISK")


class FormatTests(unittest.TestCase):
    def test_us_dollars(self) -> None:
        self.assertEqual(currency.format_currency(1234.56, "USD", "en-US"), "$1,234.56")
        self.assertEqual(currency.format_currency(Decimal("129.8"), "USD", "en-US"), "$129.80")
        self.assertEqual(currency.format_currency(0, "USD", "en-US"), "$0.00")

    def test_indian_grouping(self) -> None:
        self.assertEqual(currency.format_currency(123456.78, "INR", "en-IN"), "₹1,23,456.78")
        self.assertEqual(currency.format_currency(1234567.891, "INR", "en-IN"), "₹12,34,567.89")
        self.assertEqual(currency.format_currency(999, "INR", "en-IN"), "₹999.00")

    def test_symbol_after_amount(self) -> None:
        self.assertEqual(currency.format_currency(1234.56, "EUR", "de-DE"), "1.234,56\u00a0€")
        self.assertEqual(currency.format_currency(1234.56, "EUR", "fr-FR"), "1\u202f234,56\u00a0€")

    def test_unknown_code_falls_back_to_code(self) -> None:
        self.assertEqual(currency.format_currency(10, "CHF", "en-US"), "CHF\u00a010.00")
        self.assertEqual(currency.format_currency(10, "chf", "de-DE"), "10,00\u00a0CHF")

    def test_negative_amount(self) -> None:
        self.assertEqual(currency.format_currency(-1, "USD", "en-US"), "-$1.00")

    def test_currency_inferred_from_locale(self) -> None:
        self.assertEqual(currency.format_currency(10, None, "en-GB"), "£10.00")
        self.assertEqual(currency.format_currency(10, None, "en-IN"), "₹10.00")
        self.assertEqual(currency.format_currency(10, None, "ja-JP"), "¥10")
        self.assertEqual(currency.format_currency(10, None, "it-IT"), "10,00\u00a0€")


class LocaleResolutionTests(unittest.TestCase):
    def test_normalize_forms(self) -> None:
        self.assertEqual(currency.normalize_locale("en_GB.UTF-8"), "en-GB")
        self.assertEqual(currency.normalize_locale("fr-CA,fr;q=0.9"), "fr-CA")
        self.assertEqual(currency.normalize_locale("DE"), "de")
        self.assertIsNone(currency.normalize_locale("C"))
        self.assertIsNone(currency.normalize_locale(""))
        self.assertIsNone(currency.normalize_locale(None))

    def test_known_and_language_matches(self) -> None:
        self.assertEqual(currency.resolve_locale("en-IN"), "en-IN")
        self.assertEqual(currency.resolve_locale("de"), "de-DE")
        self.assertEqual(currency.resolve_locale("en-AU"), "en-US")
        self.assertEqual(currency.resolve_locale("fr-CA,fr;q=0.9"), "fr-FR")

    def test_environment_locale_used_when_argument_missing(self) -> None:
        with mock.patch.object(currency, "DISPLAY_LOCALE", "en_IN.UTF-8"):
            self.assertEqual(currency.resolve_locale(None), "en-IN")
            self.assertEqual(currency.resolve_locale("pt-BR"), "en-IN")
            self.assertEqual(currency.resolve_locale("ja-JP"), "ja-JP")

    def test_fixed_fallback(self) -> None:
        with mock.patch.object(currency, "DISPLAY_LOCALE", ""):
            self.assertEqual(currency.resolve_locale(None), "en-US")
            self.assertEqual(currency.resolve_locale("pt-BR"), "en-US")
            self.assertEqual(currency.format_currency(5, None, None), "$5.00")


if __name__ == "__main__":
    unittest.main()
