"""
Tests for password and API key generation.

Run with: pytest tests/test_generators.py -v
"""
import re
import unittest
from unittest.mock import patch

from flowops.generators import PASSWORD_ALPHABET, generate_api_key, generate_password


class TestGeneratePassword(unittest.TestCase):

    def test_exact_length(self):
        for length in range(1, 65):
            self.assertEqual(len(generate_password(length)), length)

    def test_default_length_is_32(self):
        self.assertEqual(len(generate_password()), 32)

    def test_only_alphanumeric(self):
        value = generate_password(500)
        self.assertTrue(set(value) <= set(PASSWORD_ALPHABET))
        self.assertRegex(value, r"^[A-Za-z0-9]+$")

    def test_values_do_not_repeat(self):
        values = {generate_password(32) for _ in range(1000)}
        self.assertEqual(len(values), 1000)

    def test_zero_length_rejected(self):
        with self.assertRaises(ValueError):
            generate_password(0)

    def test_random_source_failure_propagates(self):
        with patch("flowops.generators.secrets.choice", side_effect=NotImplementedError("no entropy")):
            with self.assertRaises(NotImplementedError):
                generate_password(16)


class TestGenerateApiKey(unittest.TestCase):

    def test_format(self):
        self.assertRegex(generate_api_key("n8n"), r"^n8n_[0-9a-f]{64}$")

    def test_default_prefix(self):
        self.assertTrue(generate_api_key().startswith("sk_"))

    def test_unique(self):
        self.assertNotEqual(generate_api_key(), generate_api_key())

    def test_hex_part_length(self):
        prefix, _, key = generate_api_key("flow").partition("_")
        self.assertEqual(prefix, "flow")
        self.assertTrue(re.fullmatch(r"[0-9a-f]{64}", key))


if __name__ == "__main__":
    unittest.main()
