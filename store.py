import datetime
from bson.objectid import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING


def utcnow():
    """Naive UTC timestamp, the form pymongo hands back from the database."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_object_id(value):
    """Return the canonical ObjectId for a like/author reference, or None.

    Accepts an ObjectId, its hex string, or an embedded document carrying an
    `_id` (older records stored populated users in place of ids).
    """
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, dict):
        return to_object_id(value.get('_id'))
    if isinstance(value, str):
        try:
            return ObjectId(value)
        except InvalidId:
            return None
    return None


class AuthContext:
    """Identity of the user making a request. Passed explicitly into operations."""

    def __init__(self, user_id, username):
        self.user_id = to_object_id(user_id)
        self.username = username

    def __repr__(self):
        return f"AuthContext({self.username!r})"


class BlogStore:
    """Holds the MongoDB collections the application works against."""

    def __init__(self, db):
        self.db = db
        self.users = db['users']
        self.posts = db['posts']
        self.comments = db['comments']

    def ensure_indexes(self):
        self.users.create_index([('username', ASCENDING)], unique=True)
        self.users.create_index([('email', ASCENDING)], unique=True)
        self.users.create_index([('reset_token', ASCENDING)], sparse=True)
        self.posts.create_index([('slug', ASCENDING)], unique=True)
        self.posts.create_index([('created_at', DESCENDING)])
        self.posts.create_index([('tags', ASCENDING)])
        self.posts.create_index([('author', ASCENDING)])
        self.comments.create_index([('post', ASCENDING)])

    def find_user(self, user_id):
        oid = to_object_id(user_id)
        if oid is None:
            return None
        return self.users.find_one({'_id': oid})

    def users_by_id(self, ids):
        """Map canonical id -> user document for the given references."""
        oids = [oid for oid in (to_object_id(i) for i in ids) if oid is not None]
        if not oids:
            return {}
        cursor = self.users.find({'_id': {'$in': oids}}, {'password': 0, 'reset_token': 0})
        return {u['_id']: u for u in cursor}
