#!/usr/bin/env python3
"""
Migration script that rewrites every post's `likes` array to canonical form:
ObjectIds only, no nulls, each user at most once. Older records hold string
ids, populated user documents and duplicates.
"""

import os
import sys

from dotenv import load_dotenv
from pymongo import MongoClient

import posts
from store import BlogStore

load_dotenv()


def migrate_likes(store):
    """Normalise like arrays. Returns (posts_scanned, posts_updated)."""
    scanned = updated = 0
    for post in store.posts.find({}, {'likes': 1}):
        scanned += 1
        if posts.normalize_likes(store, post) != post.get('likes'):
            updated += 1
    return scanned, updated


if __name__ == '__main__':
    print("=" * 60)
    print("Normalising post likes")
    print("=" * 60)

    client = MongoClient(os.environ.get('MONGODB_CONNECTION', 'mongodb://localhost:27017'))
    store = BlogStore(client[os.environ.get('MONGODB_DATABASE', 'postscript_db')])
    try:
        scanned, updated = migrate_likes(store)
    except Exception as e:
        print(f"Error during migration: {e}")
        sys.exit(1)
    finally:
        client.close()

    print(f"Scanned {scanned} posts, updated {updated}.")
    print("Migration complete!")
