import datetime
import unittest
from unittest.mock import Mock, patch

import mongomock
from werkzeug.security import check_password_hash

import accounts
from errors import AuthError, ConflictError, TokenError, ValidationError
from store import AuthContext, BlogStore, utcnow


class SignupLoginTestCase(unittest.TestCase):
    """Signup validation, uniqueness and login."""

    def setUp(self):
        self.store = BlogStore(mongomock.MongoClient().db)
        self.store.ensure_indexes()
        self.alice = accounts.signup(self.store, 'alice', 'alice@blogmail.org', 'secret123')

    def test_signup_hashes_password_and_hides_it(self):
        self.assertNotIn('password', self.alice)
        stored = self.store.users.find_one({'username': 'alice'})
        self.assertNotEqual(stored['password'], 'secret123')
        self.assertTrue(check_password_hash(stored['password'], 'secret123'))

    def test_signup_normalises_email(self):
        accounts.signup(self.store, 'bob', '  Bob@BlogMail.org ', 'secret123')
        self.assertIsNotNone(self.store.users.find_one({'email': 'bob@blogmail.org'}))

    def test_signup_rejects_invalid_input(self):
        with self.assertRaises(ValidationError) as cm:
            accounts.signup(self.store, 'x!', 'not-an-email', '123')
        messages = cm.exception.messages
        self.assertIn("Username must be 3-20 characters.", messages)
        self.assertIn("Username must be alphanumeric.", messages)
        self.assertIn("Invalid email address.", messages)
        self.assertIn("Password must be at least 6 characters.", messages)

    def test_signup_rejects_long_username(self):
        with self.assertRaises(ValidationError):
            accounts.signup(self.store, 'a' * 21, 'long@blogmail.org', 'secret123')

    def test_duplicate_username_conflicts(self):
        with self.assertRaises(ConflictError):
            accounts.signup(self.store, 'alice', 'other@blogmail.org', 'secret123')

    def test_duplicate_email_conflicts(self):
        with self.assertRaises(ConflictError):
            accounts.signup(self.store, 'alice2', 'ALICE@blogmail.org', 'secret123')
        self.assertEqual(self.store.users.count_documents({}), 1)

    def test_login_success(self):
        user = accounts.authenticate(self.store, 'alice', 'secret123')
        self.assertEqual(user['username'], 'alice')

    def test_login_failures_look_identical(self):
        with self.assertRaises(AuthError) as wrong_password:
            accounts.authenticate(self.store, 'alice', 'wrong-password')
        with self.assertRaises(AuthError) as unknown_user:
            accounts.authenticate(self.store, 'nobody', 'secret123')
        self.assertEqual(wrong_password.exception.message, unknown_user.exception.message)
        self.assertEqual(wrong_password.exception.status_code, unknown_user.exception.status_code)

    def test_login_requires_both_fields(self):
        with self.assertRaises(ValidationError):
            accounts.authenticate(self.store, 'alice', '')


class PasswordResetTestCase(unittest.TestCase):
    """Token issue, expiry and single use."""

    def setUp(self):
        self.store = BlogStore(mongomock.MongoClient().db)
        self.store.ensure_indexes()
        accounts.signup(self.store, 'alice', 'alice@blogmail.org', 'old_password')
        self.notify = Mock()

    def request_token(self):
        accounts.request_password_reset(self.store, 'alice@blogmail.org', self.notify)
        self.assertTrue(self.notify.called)
        email, token = self.notify.call_args[0]
        self.assertEqual(email, 'alice@blogmail.org')
        return token

    def test_token_is_stored_hashed_with_one_hour_expiry(self):
        before = utcnow()
        token = self.request_token()
        self.assertGreaterEqual(len(token), 43)  # 32 random bytes, base64url
        user = self.store.users.find_one({'username': 'alice'})
        self.assertEqual(user['reset_token'], accounts.hash_token(token))
        self.assertNotEqual(user['reset_token'], token)
        expected = before + datetime.timedelta(hours=1)
        self.assertLess(abs((user['reset_expiry'] - expected).total_seconds()), 5)

    def test_unknown_email_gets_the_same_answer(self):
        known = accounts.request_password_reset(self.store, 'alice@blogmail.org', Mock())
        notify = Mock()
        unknown = accounts.request_password_reset(self.store, 'ghost@blogmail.org', notify)
        self.assertEqual(known, unknown)
        notify.assert_not_called()

    def test_lookup_uses_the_signup_normalisation(self):
        # Decomposed and composed forms of the same address reach the same account.
        accounts.signup(self.store, 'jose', 'jos\u00e9@blogmail.org', 'secret123')
        notify = Mock()
        accounts.request_password_reset(self.store, ' Jose\u0301@BlogMail.org ', notify)
        self.assertTrue(notify.called)
        self.assertEqual(notify.call_args[0][0], 'jos\u00e9@blogmail.org')

    def test_malformed_email_gets_the_same_answer(self):
        notify = Mock()
        answer = accounts.request_password_reset(self.store, 'not-an-email', notify)
        self.assertEqual(answer, accounts.request_password_reset(self.store, 'alice@blogmail.org', Mock()))
        notify.assert_not_called()

    def test_consume_replaces_password_and_clears_token(self):
        token = self.request_token()
        accounts.consume_password_reset(self.store, token, 'new_password')
        user = self.store.users.find_one({'username': 'alice'})
        self.assertTrue(check_password_hash(user['password'], 'new_password'))
        self.assertNotIn('reset_token', user)
        self.assertNotIn('reset_expiry', user)
        accounts.authenticate(self.store, 'alice', 'new_password')
        with self.assertRaises(AuthError):
            accounts.authenticate(self.store, 'alice', 'old_password')

    def test_token_cannot_be_reused(self):
        token = self.request_token()
        accounts.consume_password_reset(self.store, token, 'new_password')
        with self.assertRaises(TokenError):
            accounts.consume_password_reset(self.store, token, 'another_password')

    def test_token_older_than_an_hour_is_rejected(self):
        token = self.request_token()
        later = utcnow() + datetime.timedelta(hours=1, minutes=1)
        with patch('accounts.utcnow', return_value=later):
            with self.assertRaises(TokenError):
                accounts.check_reset_token(self.store, token)
            with self.assertRaises(TokenError):
                accounts.consume_password_reset(self.store, token, 'new_password')

    def test_unknown_token_is_rejected(self):
        with self.assertRaises(TokenError):
            accounts.consume_password_reset(self.store, 'made-up-token', 'new_password')

    def test_short_new_password_keeps_token(self):
        token = self.request_token()
        with self.assertRaises(ValidationError):
            accounts.consume_password_reset(self.store, token, '123')
        self.assertEqual(accounts.check_reset_token(self.store, token)['username'], 'alice')


class EditProfileTestCase(unittest.TestCase):

    def setUp(self):
        self.store = BlogStore(mongomock.MongoClient().db)
        user = accounts.signup(self.store, 'alice', 'alice@blogmail.org', 'secret123')
        self.ctx = AuthContext(user['_id'], 'alice')

    def test_bio_is_updated(self):
        user = accounts.edit_profile(self.store, self.ctx, '  Hello there  ', None, '/tmp/unused')
        self.assertEqual(user['bio'], 'Hello there')

    def test_bio_too_long(self):
        with self.assertRaises(ValidationError):
            accounts.edit_profile(self.store, self.ctx, 'x' * 201, None, '/tmp/unused')

    def test_requires_login(self):
        with self.assertRaises(AuthError):
            accounts.edit_profile(self.store, None, 'bio', None, '/tmp/unused')


if __name__ == '__main__':
    unittest.main()
