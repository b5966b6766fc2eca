"""Post operations: authoring, listing, search, likes and comments."""
import logging
import math
import re

import bleach
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from slugify import slugify

import uploads
from errors import AuthError, ConflictError, ForbiddenError, NotFoundError, ServerError, ValidationError
from store import to_object_id, utcnow

logger = logging.getLogger(__name__)

POSTS_PER_PAGE = 10
MAX_TOGGLE_ATTEMPTS = 3

# Markup the rich-text editor produces.
ALLOWED_TAGS = {
    'p', 'br', 'strong', 'b', 'em', 'i', 'u', 's', 'a', 'ul', 'ol', 'li',
    'blockquote', 'pre', 'code', 'h1', 'h2', 'h3', 'span', 'sub', 'sup',
}
ALLOWED_ATTRIBUTES = {
    'a': ['href', 'title', 'target', 'rel'],
    '*': ['class'],
}
ALLOWED_PROTOCOLS = {'http', 'https', 'mailto'}

NON_WORD_RE = re.compile(r'[^\w\s-]+')
SLUG_DISALLOWED = r'[^-a-z0-9_]+'


def generate_slug(title):
    """Lowercase the title, drop punctuation and join the words with hyphens."""
    if not title:
        return ''
    text = NON_WORD_RE.sub('', str(title).strip())
    return slugify(text, regex_pattern=SLUG_DISALLOWED)


def unique_slug(store, title, exclude_id=None):
    base_slug = generate_slug(title)
    if not base_slug:
        raise ValidationError("Title must contain letters or numbers.")
    query = {'_id': {'$ne': exclude_id}} if exclude_id else {}
    slug = base_slug
    counter = 1
    while store.posts.find_one({**query, 'slug': slug}, {'_id': 1}):
        slug = f"{base_slug}-{counter}"
        counter += 1
    return slug


def parse_tags(raw):
    """Comma separated (or already split) tags -> ordered, lower-cased, unique list."""
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.split(',')
    tags = []
    for tag in raw:
        tag = tag.strip().lower()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def sanitize_content(content):
    return bleach.clean(content, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES,
                        protocols=ALLOWED_PROTOCOLS, strip=True)


def _validate_post(title, content):
    title = (title or '').strip()
    content = (content or '').strip()
    errors = []
    if not 3 <= len(title) <= 100:
        errors.append("Title must be 3-100 characters.")
    if len(content) < 10:
        errors.append("Content must be at least 10 characters.")
    if errors:
        raise ValidationError(errors)
    return title, sanitize_content(content)


def require_author(store, slug, ctx):
    if ctx is None:
        raise AuthError()
    post = store.posts.find_one({'slug': slug})
    if not post:
        raise NotFoundError("Post not found.")
    if to_object_id(post.get('author')) != ctx.user_id:
        raise ForbiddenError()
    return post


def create_post(store, ctx, title, content, tags, image_file, upload_folder):
    if ctx is None:
        raise AuthError()
    title, content = _validate_post(title, content)
    slug = unique_slug(store, title)
    image = uploads.save_image(image_file, upload_folder)

    now = utcnow()
    post = {
        'title': title,
        'slug': slug,
        'content': content,
        'author': ctx.user_id,
        'tags': parse_tags(tags),
        'likes': [],
        'comments': [],
        'image': image,
        'created_at': now,
        'updated_at': now,
    }
    try:
        post['_id'] = store.posts.insert_one(post).inserted_id
    except DuplicateKeyError:
        uploads.remove_image(image, upload_folder)
        raise ConflictError("A post with this title was just created. Please try again.")
    logger.info(f"Post '{slug}' created by {ctx.username}")
    return post


def edit_post(store, ctx, slug, title, content, tags, image_file, upload_folder):
    post = require_author(store, slug, ctx)
    title, content = _validate_post(title, content)

    new_slug = post['slug']
    if title != post.get('title'):
        new_slug = unique_slug(store, title, exclude_id=post['_id'])

    update = {
        'title': title,
        'slug': new_slug,
        'content': content,
        'tags': parse_tags(tags),
        'updated_at': utcnow(),
    }
    new_image = uploads.save_image(image_file, upload_folder)
    if new_image:
        update['image'] = new_image

    try:
        updated = store.posts.find_one_and_update(
            {'_id': post['_id']}, {'$set': update}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        uploads.remove_image(new_image, upload_folder)
        raise ConflictError("A post with this title was just created. Please try again.")
    if new_image and post.get('image'):
        uploads.remove_image(post['image'], upload_folder)
    logger.info(f"Post '{slug}' updated by {ctx.username} (now '{new_slug}')")
    return updated


def delete_post(store, ctx, slug, upload_folder):
    post = require_author(store, slug, ctx)
    store.posts.delete_one({'_id': post['_id']})
    if post.get('image'):
        uploads.remove_image(post['image'], upload_folder)
    logger.info(f"Post '{slug}' deleted by {ctx.username}")
    return post


def canonical_likes(likes):
    """Canonical ObjectIds from a like array, dropping nulls and duplicates."""
    canonical = []
    for entry in likes or []:
        oid = to_object_id(entry)
        if oid is not None and oid not in canonical:
            canonical.append(oid)
    return canonical


def normalize_likes(store, post):
    """Rewrite legacy like entries in place. Returns the canonical list."""
    likes = post.get('likes')
    canonical = canonical_likes(likes)
    if likes is None or canonical != likes:
        # Conditional on the old value so a concurrent toggle is not overwritten.
        # Matching None covers both a missing field and an explicit null.
        store.posts.update_one({'_id': post['_id'], 'likes': likes}, {'$set': {'likes': canonical}})
    return canonical


def toggle_like(store, slug, ctx):
    """Like the post if the caller has not, unlike it otherwise.

    Returns (liked, like_count). Each branch is a single conditional update,
    so a pair of concurrent toggles cannot lose one of them.
    """
    if ctx is None:
        raise AuthError()
    user = store.find_user(ctx.user_id)
    if not user:
        raise NotFoundError("User not found.")
    post = store.posts.find_one({'slug': slug})
    if not post:
        raise NotFoundError("Post not found.")

    normalize_likes(store, post)
    uid = user['_id']
    for _ in range(MAX_TOGGLE_ATTEMPTS):
        updated = store.posts.find_one_and_update(
            {'_id': post['_id'], 'likes': uid},
            {'$pull': {'likes': uid}},
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            liked = False
            break
        updated = store.posts.find_one_and_update(
            {'_id': post['_id'], 'likes': {'$ne': uid}},
            {'$addToSet': {'likes': uid}},
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            liked = True
            break
        if not store.posts.count_documents({'_id': post['_id']}):
            raise NotFoundError("Post not found.")
    else:
        raise ServerError("Could not update the like. Please try again.")

    return liked, len(updated.get('likes') or [])


def add_comment(store, slug, ctx, content):
    if ctx is None:
        raise AuthError()
    post = store.posts.find_one({'slug': slug}, {'_id': 1, 'slug': 1})
    if not post:
        raise NotFoundError("Post not found.")
    content = (content or '').strip()
    if not content:
        raise ValidationError("Comment cannot be empty.")
    user = store.find_user(ctx.user_id)
    if not user:
        raise NotFoundError("User not found.")

    comment = {
        'content': content,
        'author': user['_id'],
        'post': post['_id'],
        'created_at': utcnow(),
    }
    comment['_id'] = store.comments.insert_one(comment).inserted_id
    store.posts.update_one({'_id': post['_id']}, {'$push': {'comments': comment['_id']}})
    return comment


# --- Read side -------------------------------------------------------------

def prepare_posts(store, posts, ctx=None):
    """Attach the author document and like state each listed post displays."""
    authors = store.users_by_id([p.get('author') for p in posts])
    viewer = ctx.user_id if ctx else None
    for post in posts:
        likes = canonical_likes(post.get('likes'))
        post['author_user'] = authors.get(to_object_id(post.get('author')))
        post['likes_count'] = len(likes)
        post['liked'] = viewer in likes if viewer else False
    return posts


def get_post(store, slug, ctx=None):
    """A post with its author, comments (in order) and liking users resolved."""
    post = store.posts.find_one({'slug': slug})
    if not post:
        raise NotFoundError("The post you are looking for does not exist.")
    prepare_posts(store, [post], ctx)

    comment_ids = post.get('comments') or []
    by_id = {c['_id']: c for c in store.comments.find({'_id': {'$in': comment_ids}})}
    comments = [by_id[cid] for cid in comment_ids if cid in by_id]
    commenters = store.users_by_id([c.get('author') for c in comments])
    for comment in comments:
        comment['author_user'] = commenters.get(to_object_id(comment.get('author')))
    post['comment_list'] = comments

    likers = store.users_by_id(canonical_likes(post.get('likes')))
    post['likers'] = list(likers.values())
    return post


def list_posts(store, page=1, ctx=None, per_page=POSTS_PER_PAGE):
    """One page of posts, newest first. Returns (posts, page, total_pages)."""
    try:
        page = max(int(page), 1)
    except (TypeError, ValueError):
        page = 1
    total = store.posts.count_documents({})
    total_pages = math.ceil(total / per_page)
    cursor = store.posts.find().sort('created_at', DESCENDING).skip((page - 1) * per_page).limit(per_page)
    return prepare_posts(store, list(cursor), ctx), page, total_pages


def recent_posts(store, ctx=None):
    return prepare_posts(store, list(store.posts.find().sort('created_at', DESCENDING)), ctx)


def posts_by_author(store, ctx):
    if ctx is None:
        raise AuthError()
    cursor = store.posts.find({'author': ctx.user_id}).sort('created_at', DESCENDING)
    return prepare_posts(store, list(cursor), ctx)


def posts_by_tag(store, tag, ctx=None):
    cursor = store.posts.find({'tags': tag.strip().lower()}).sort('created_at', DESCENDING)
    return prepare_posts(store, list(cursor), ctx)


def search_posts(store, query, ctx=None):
    query = (query or '').strip()
    if not query:
        return []
    pattern = {'$regex': re.escape(query), '$options': 'i'}
    cursor = store.posts.find({
        '$or': [
            {'title': pattern},
            {'content': pattern},
            {'tags': query.lower()},
        ]
    }).sort('created_at', DESCENDING)
    return prepare_posts(store, list(cursor), ctx)
