import unittest

from socialape.validators import (
    EMPTY_FIELD,
    is_email,
    is_empty,
    reduce_user_details,
    validate_login_data,
    validate_signup_data,
)


class ValidatorTests(unittest.TestCase):
    def test_is_empty(self):
        self.assertTrue(is_empty(None))
        self.assertTrue(is_empty("   "))
        self.assertFalse(is_empty(" x "))

    def test_is_email(self):
        self.assertTrue(is_email("ape@example.com"))
        self.assertTrue(is_email("first.last@sub.example.org"))
        self.assertFalse(is_email("ape@"))
        self.assertFalse(is_email("ape example.com"))
        self.assertFalse(is_email(None))

    def test_valid_signup(self):
        valid, errors = validate_signup_data(
            {
                "email": "ape@example.com",
                "password": "secret",
                "confirmPassword": "secret",
                "handle": "ape",
            }
        )
        self.assertTrue(valid)
        self.assertEqual(errors, {})

    def test_signup_errors(self):
        valid, errors = validate_signup_data(
            {"email": "", "password": "secret", "confirmPassword": "other", "handle": ""}
        )
        self.assertFalse(valid)
        self.assertEqual(
            errors,
            {
                "email": EMPTY_FIELD,
                "confirmPassword": "Both passwords must match",
                "handle": EMPTY_FIELD,
            },
        )

    def test_login_errors(self):
        valid, errors = validate_login_data({"email": "ape@example.com"})
        self.assertFalse(valid)
        self.assertEqual(errors, {"password": EMPTY_FIELD})

    def test_reduce_user_details(self):
        details = reduce_user_details(
            {"bio": "  Ape  ", "website": " ape.com ", "location": "  "}
        )
        self.assertEqual(details, {"bio": "Ape", "website": "http://ape.com"})

    def test_reduce_user_details_keeps_scheme(self):
        details = reduce_user_details({"website": "https://ape.com"})
        self.assertEqual(details, {"website": "https://ape.com"})


if __name__ == "__main__":
    unittest.main()
