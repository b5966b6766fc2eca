import datetime
import unittest

import mongomock
from bson.objectid import ObjectId

from cleanup_expired_tokens import cleanup_expired_reset_tokens
from migrate_likes import migrate_likes
from store import BlogStore, utcnow


class CleanupExpiredTokensTestCase(unittest.TestCase):

    def setUp(self):
        self.store = BlogStore(mongomock.MongoClient().db)
        now = utcnow()
        self.store.users.insert_many([
            {'username': 'expired', 'reset_token': 'a', 'reset_expiry': now - datetime.timedelta(hours=2)},
            {'username': 'live', 'reset_token': 'b', 'reset_expiry': now + datetime.timedelta(minutes=30)},
            {'username': 'broken', 'reset_token': 'c'},
            {'username': 'plain'},
        ])

    def test_only_dead_tokens_are_cleared(self):
        cleared = cleanup_expired_reset_tokens(self.store.users)
        self.assertEqual(cleared, 2)
        self.assertNotIn('reset_token', self.store.users.find_one({'username': 'expired'}))
        self.assertNotIn('reset_expiry', self.store.users.find_one({'username': 'expired'}))
        self.assertNotIn('reset_token', self.store.users.find_one({'username': 'broken'}))
        self.assertEqual(self.store.users.find_one({'username': 'live'})['reset_token'], 'b')


class MigrateLikesTestCase(unittest.TestCase):

    def test_like_arrays_are_canonicalised(self):
        store = BlogStore(mongomock.MongoClient().db)
        a, b = ObjectId(), ObjectId()
        store.posts.insert_many([
            {'slug': 'legacy', 'likes': [None, str(a), {'_id': b}, a]},
            {'slug': 'clean', 'likes': [a, b]},
            {'slug': 'missing'},
            {'slug': 'null', 'likes': None},
        ])

        scanned, updated = migrate_likes(store)

        self.assertEqual((scanned, updated), (4, 3))
        self.assertEqual(store.posts.find_one({'slug': 'legacy'})['likes'], [a, b])
        self.assertEqual(store.posts.find_one({'slug': 'clean'})['likes'], [a, b])
        self.assertEqual(store.posts.find_one({'slug': 'missing'})['likes'], [])
        self.assertEqual(store.posts.find_one({'slug': 'null'})['likes'], [])


if __name__ == '__main__':
    unittest.main()
