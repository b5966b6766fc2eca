"""Account operations: signup, login, logout, password reset and profile edits.

Every function takes the `BlogStore` it works against. Operations that act on
behalf of a logged-in user take an explicit `AuthContext` (None when the
caller is anonymous) instead of reading the session.
"""
import datetime
import hashlib
import logging
import re
import secrets

from email_validator import validate_email, EmailNotValidError
from flask import session
from flask_login import logout_user
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from werkzeug.security import generate_password_hash, check_password_hash

import uploads
from errors import AuthError, ConflictError, NotFoundError, SessionError, TokenError, ValidationError
from store import utcnow

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r'^[a-zA-Z0-9_]+$')
MIN_PASSWORD_LENGTH = 6
MAX_BIO_LENGTH = 200
RESET_TOKEN_LIFETIME = datetime.timedelta(hours=1)

LOGIN_FAILED = "Invalid username or password."
RESET_REQUESTED = "If an account with that email exists, we've sent you a password reset link."


def hash_token(token):
    return hashlib.sha256(token.encode()).hexdigest()


def _public(user):
    return {k: v for k, v in user.items() if k not in ('password', 'reset_token', 'reset_expiry')}


def _check_password(password):
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    return None


def signup(store, username, email, password):
    """Create a user. Returns the stored document without credentials."""
    username = (username or '').strip()
    errors = []
    if not 3 <= len(username) <= 20:
        errors.append("Username must be 3-20 characters.")
    if username and not USERNAME_RE.match(username):
        errors.append("Username must be alphanumeric.")
    try:
        email = validate_email((email or '').strip(), check_deliverability=False).normalized.lower()
    except EmailNotValidError:
        errors.append("Invalid email address.")
    password_error = _check_password(password)
    if password_error:
        errors.append(password_error)
    if errors:
        raise ValidationError(errors)

    if store.users.find_one({'$or': [{'username': username}, {'email': email}]}):
        raise ConflictError()

    user = {
        'username': username,
        'email': email,
        'password': generate_password_hash(password),
        'bio': '',
        'avatar': None,
        'join_date': utcnow(),
    }
    try:
        result = store.users.insert_one(user)
    except DuplicateKeyError:
        raise ConflictError()
    user['_id'] = result.inserted_id
    logger.info(f"New user '{username}' signed up")
    return _public(user)


def authenticate(store, username, password):
    """Check credentials and return the user document.

    Unknown users and wrong passwords fail with the same message.
    """
    if not username or not password:
        raise ValidationError("Username and password are required.")
    user = store.users.find_one({'username': username})
    if not user or not check_password_hash(user['password'], password):
        raise AuthError(LOGIN_FAILED)
    return user


def end_session():
    try:
        logout_user()
        session.clear()
    except Exception as e:
        logger.error(f"Failed to end session: {e}", exc_info=True)
        raise SessionError() from e


def request_password_reset(store, email, notify):
    """Issue a reset token for the account behind `email`.

    `notify(email, token)` delivers the raw token; only its digest is stored.
    The returned message is the same whether or not the account exists.
    """
    email = (email or '').strip()
    if not email:
        raise ValidationError("Please enter your email address.")
    try:
        email = validate_email(email, check_deliverability=False).normalized.lower()
    except EmailNotValidError:
        logger.info("Password reset requested for a malformed email")
        return RESET_REQUESTED

    token = secrets.token_urlsafe(32)
    user = store.users.find_one_and_update(
        {'email': email},
        {'$set': {'reset_token': hash_token(token), 'reset_expiry': utcnow() + RESET_TOKEN_LIFETIME}},
    )
    if user:
        notify(user['email'], token)
        logger.info(f"Password reset requested for user '{user['username']}'")
    else:
        logger.info("Password reset requested for an unknown email")
    return RESET_REQUESTED


def check_reset_token(store, token):
    user = store.users.find_one({'reset_token': hash_token(token), 'reset_expiry': {'$gt': utcnow()}})
    if not user:
        raise TokenError()
    return _public(user)


def consume_password_reset(store, token, new_password):
    """Replace the password and clear the token in a single update."""
    password_error = _check_password(new_password)
    if password_error:
        raise ValidationError(password_error)

    user = store.users.find_one_and_update(
        {'reset_token': hash_token(token), 'reset_expiry': {'$gt': utcnow()}},
        {
            '$set': {'password': generate_password_hash(new_password)},
            '$unset': {'reset_token': '', 'reset_expiry': ''},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise TokenError()
    logger.info(f"Password reset completed for user '{user['username']}'")
    return _public(user)


def edit_profile(store, ctx, bio, avatar_file, upload_folder):
    if ctx is None:
        raise AuthError()
    user = store.users.find_one({'_id': ctx.user_id})
    if not user:
        raise NotFoundError("User not found.")

    bio = (bio or '').strip()
    if len(bio) > MAX_BIO_LENGTH:
        raise ValidationError(f"Bio must be under {MAX_BIO_LENGTH} characters.")

    update = {'bio': bio}
    new_avatar = uploads.save_image(avatar_file, upload_folder)
    if new_avatar:
        update['avatar'] = new_avatar

    old_avatar = user.get('avatar')
    user = store.users.find_one_and_update(
        {'_id': user['_id']}, {'$set': update}, return_document=ReturnDocument.AFTER
    )
    # Old avatar goes only once the new path is stored.
    if new_avatar and old_avatar and old_avatar != new_avatar:
        uploads.remove_image(old_avatar, upload_folder)
    return _public(user)
