#!/usr/bin/env python3
"""
Cleanup script for expired password reset tokens.
Unsets reset_token/reset_expiry on every user whose token has expired, so an
expired link can never be matched again and the sparse index stays small.
"""

import os
import sys

from dotenv import load_dotenv
from pymongo import MongoClient

from store import utcnow

load_dotenv()


def get_env_variable(name: str, default=None) -> str:
    """Get an environment variable or raise an exception."""
    value = os.environ.get(name, default)
    if not value:
        raise ValueError(f"Environment variable {name} is not set")
    return value


def cleanup_expired_reset_tokens(users, now=None):
    """Clear expired reset tokens. Returns the number of users touched."""
    now = now or utcnow()
    result = users.update_many(
        {'reset_token': {'$exists': True}, 'reset_expiry': {'$lt': now}},
        {'$unset': {'reset_token': '', 'reset_expiry': ''}}
    )
    # Tokens without an expiry can never be consumed; drop them too.
    orphaned = users.update_many(
        {'reset_token': {'$exists': True}, 'reset_expiry': {'$exists': False}},
        {'$unset': {'reset_token': ''}}
    )
    return result.modified_count + orphaned.modified_count


if __name__ == '__main__':
    client = MongoClient(get_env_variable('MONGODB_CONNECTION', 'mongodb://localhost:27017'))
    db = client[get_env_variable('MONGODB_DATABASE', 'postscript_db')]
    try:
        cleared = cleanup_expired_reset_tokens(db['users'])
    except Exception as e:
        print(f"Error during cleanup: {e}")
        sys.exit(1)
    finally:
        client.close()
    print(f"Cleanup completed at {utcnow().isoformat()}")
    print(f"  - Expired reset tokens cleared: {cleared}")
