import datetime
from flask import Flask, request, jsonify, render_template, url_for, redirect, flash, send_from_directory
import logging
import os
import time
import redis
import click
from concurrent.futures import ThreadPoolExecutor
from flask_rq2 import RQ
from flask_login import LoginManager, UserMixin, login_user, login_required, current_user
from flask_mail import Mail, Message
from pymongo import MongoClient
from pymongo.errors import PyMongoError
from dotenv import load_dotenv
from logging.handlers import RotatingFileHandler
from pythonjsonlogger import jsonlogger
from werkzeug.middleware.proxy_fix import ProxyFix

import accounts
import posts
from errors import BlogError, AuthError, ConflictError, ServerError, TokenError, ValidationError
from store import AuthContext, BlogStore

load_dotenv()

app = Flask(__name__)

# Use ProxyFix to handle headers from reverse proxies so url_for builds
# correct external links in reset emails.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)


def get_env_variable(name: str, default=None) -> str:
    """Get an environment variable, falling back to `default` when one is given."""
    value = os.environ.get(name, default)
    if value is None:
        raise Exception(f"Expected environment variable '{name}' not set.")
    return value


def env_flag(name: str, default: str) -> bool:
    return get_env_variable(name, default).lower() in ('1', 'true', 'yes', 'on')


if not app.debug:
    file_handler = RotatingFileHandler(get_env_variable('LOG_FILE', 'postscript.log'),
                                       maxBytes=1024 * 1024 * 10, backupCount=5)
    file_handler.setLevel(logging.INFO)
    formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(message)s %(pathname)s %(lineno)d'
    )
    file_handler.setFormatter(formatter)

    # Attach to the root logger so the accounts/posts/uploads loggers land in
    # the same file as the app logger.
    root_logger = logging.getLogger()
    root_logger.addHandler(file_handler)
    root_logger.setLevel(logging.INFO)
    app.logger.setLevel(logging.INFO)
    app.logger.info('PostScript application startup')

app.config["SECRET_KEY"] = get_env_variable('SECRET')

# Secure session cookie settings
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SECURE'] = env_flag('SESSION_COOKIE_SECURE', 'true')
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = datetime.timedelta(days=1)

app.config['UPLOAD_FOLDER'] = get_env_variable('UPLOAD_FOLDER', os.path.join(app.root_path, 'static', 'uploads'))
app.config['MAX_CONTENT_LENGTH'] = 5 * 1024 * 1024
os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

app.config['MAIL_SERVER'] = get_env_variable('MAIL_SERVER', 'localhost')
app.config['MAIL_PORT'] = int(get_env_variable('MAIL_PORT', '465'))
app.config['MAIL_USE_SSL'] = env_flag('MAIL_USE_SSL', 'true')
app.config['MAIL_USERNAME'] = get_env_variable('MAIL_USERNAME', '')
app.config['MAIL_PASSWORD'] = get_env_variable('MAIL_PASSWORD', '')
app.config['MAIL_DEFAULT_SENDER'] = app.config['MAIL_USERNAME'] or 'no-reply@localhost'
mail = Mail(app)

# Redis backs the RQ queue for outgoing mail.
app.config['RQ_REDIS_URL'] = get_env_variable('REDIS_URL', 'redis://localhost:6379/0')
rq = RQ(app)

login_manager = LoginManager(app)
login_manager.login_view = 'login'
login_manager.login_message_category = 'danger'

client = MongoClient(get_env_variable('MONGODB_CONNECTION', 'mongodb://localhost:27017'))
store = BlogStore(client[get_env_variable('MONGODB_DATABASE', 'postscript_db')])

mail_executor = ThreadPoolExecutor(max_workers=2)


class User(UserMixin):
    def __init__(self, user_data):
        self.id = str(user_data["_id"])
        self.username = user_data["username"]


@login_manager.user_loader
def load_user(user_id):
    user_data = store.find_user(user_id)
    return User(user_data) if user_data else None


def current_context():
    """The caller's identity for this request, or None when anonymous."""
    if current_user.is_authenticated:
        return AuthContext(current_user.id, current_user.username)
    return None


def wants_json():
    if request.is_json or request.headers.get('X-Requested-With') == 'XMLHttpRequest':
        return True
    best = request.accept_mimetypes.best_match(['application/json', 'text/html'])
    return best == 'application/json' and request.accept_mimetypes[best] > request.accept_mimetypes['text/html']


def safe_next(target):
    if target and target.startswith('/') and not target.startswith('//'):
        return target
    return None


def login_return_path():
    """Page to come back to after logging in; form posts return to the post they came from."""
    if request.method == 'GET':
        return request.path
    slug = (request.view_args or {}).get('slug')
    return url_for('view_post', slug=slug) if slug else None


@app.context_processor
def inject_globals():
    return {'current_year': datetime.date.today().year}


# --- Mail -----------------------------------------------------------------

@rq.job
def send_reset_email(email, reset_url, retries=3, delay=2):
    for attempt in range(retries):
        try:
            msg = Message(subject="PostScript Password Reset", recipients=[email])
            msg.html = render_template("reset_email.html", reset_url=reset_url)
            mail.send(msg)
            app.logger.info(f"Password reset email sent to {email}")
            return True
        except Exception as e:
            app.logger.error(f"Attempt {attempt+1} failed to send reset email to {email}: {e}")
            time.sleep(delay)
    app.logger.error(f"Failed to send password reset email to {email} after {retries} attempts.")
    return False


def _send_reset_email_in_thread(email, reset_url):
    with app.app_context():
        send_reset_email(email, reset_url)


def dispatch_reset_email(email, token):
    """Notifier handed to accounts.request_password_reset."""
    reset_url = url_for('reset_password', token=token, _external=True)
    try:
        send_reset_email.queue(email, reset_url)
        app.logger.info(f"Enqueued password reset email for {email}")
    except redis.exceptions.ConnectionError as e:
        app.logger.warning(f"Redis connection failed. Falling back to thread for reset email. Error: {e}")
        mail_executor.submit(_send_reset_email_in_thread, email, reset_url)
    except Exception as e:
        app.logger.error(f"Failed to enqueue password reset email for {email}: {e}", exc_info=True)
        raise ServerError("Error sending reset email.") from e


# --- Accounts ---------------------------------------------------------------

@app.route('/signup', methods=['GET', 'POST'])
def signup():
    if request.method == 'POST':
        try:
            accounts.signup(store, request.form.get('username'), request.form.get('email'),
                            request.form.get('password'))
        except (ValidationError, ConflictError) as e:
            flash(e.message, 'danger')
            return render_template('signup.html', username=request.form.get('username', '')), e.status_code
        flash("Account created successfully! Please log in.", "success")
        return redirect(url_for('login'))
    return render_template('signup.html')


@app.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        try:
            user = accounts.authenticate(store, request.form.get('username'), request.form.get('password'))
        except (ValidationError, AuthError) as e:
            flash(e.message, 'danger')
            return redirect(url_for('login'))
        login_user(User(user))
        flash(f"Welcome back, {user['username']}!", "success")
        return redirect(safe_next(request.args.get('next')) or url_for('index'))
    return render_template('login.html')


@app.route('/logout')
def logout():
    accounts.end_session()
    flash('You have been logged out.', 'info')
    return redirect(url_for('index'))


@app.route('/forgot-password', methods=['GET', 'POST'])
def forgot_password():
    if request.method == 'POST':
        try:
            message = accounts.request_password_reset(store, request.form.get('email'), dispatch_reset_email)
            flash(message, 'info')
        except ValidationError as e:
            flash(e.message, 'danger')
            return render_template('forgot_password.html'), e.status_code
    return render_template('forgot_password.html')


@app.route('/reset-password/<token>', methods=['GET', 'POST'])
def reset_password(token):
    try:
        if request.method == 'POST':
            accounts.consume_password_reset(store, token, request.form.get('password'))
            flash("Password has been reset. You can now log in.", "success")
            return redirect(url_for('login'))
        accounts.check_reset_token(store, token)
    except TokenError as e:
        flash(e.message, 'danger')
        return render_template('reset_password.html', token=None), e.status_code
    except ValidationError as e:
        flash(e.message, 'danger')
        return render_template('reset_password.html', token=token), e.status_code
    return render_template('reset_password.html', token=token)


@app.route('/edit-profile', methods=['GET', 'POST'])
@login_required
def edit_profile():
    if request.method == 'POST':
        try:
            accounts.edit_profile(store, current_context(), request.form.get('bio'),
                                  request.files.get('avatar'), app.config['UPLOAD_FOLDER'])
        except ValidationError as e:
            flash(e.message, 'danger')
            return render_template('edit_profile.html', user=store.find_user(current_user.id)), e.status_code
        flash('Profile updated successfully!', 'success')
        return redirect(url_for('dashboard'))
    return render_template('edit_profile.html', user=store.find_user(current_user.id))


# --- Posts ------------------------------------------------------------------

@app.route('/')
def index():
    post_list = posts.recent_posts(store, current_context())
    return render_template('post_list.html', posts=post_list, heading='Welcome to PostScript')


@app.route('/all-posts')
def all_posts():
    post_list, page, total_pages = posts.list_posts(store, request.args.get('page', 1), current_context())
    return render_template('post_list.html', posts=post_list, heading='All Posts',
                           page=page, total_pages=total_pages)


@app.route('/dashboard')
@login_required
def dashboard():
    post_list = posts.posts_by_author(store, current_context())
    return render_template('post_list.html', posts=post_list, heading=f"Dashboard: {current_user.username}",
                           user=store.find_user(current_user.id))


@app.route('/new-post', methods=['GET', 'POST'])
@login_required
def new_post():
    if request.method == 'POST':
        try:
            post = posts.create_post(store, current_context(), request.form.get('title'),
                                     request.form.get('content'), request.form.get('tags'),
                                     request.files.get('image'), app.config['UPLOAD_FOLDER'])
        except (ValidationError, ConflictError) as e:
            flash(e.message, 'danger')
            return render_template('post_form.html', post=request.form, action=url_for('new_post')), e.status_code
        flash("Post created successfully!", "success")
        return redirect(url_for('view_post', slug=post['slug']))
    return render_template('post_form.html', post={}, action=url_for('new_post'))


@app.route('/edit-post/<slug>', methods=['GET', 'POST'])
@login_required
def edit_post(slug):
    if request.method == 'POST':
        try:
            post = posts.edit_post(store, current_context(), slug, request.form.get('title'),
                                   request.form.get('content'), request.form.get('tags'),
                                   request.files.get('image'), app.config['UPLOAD_FOLDER'])
        except (ValidationError, ConflictError) as e:
            flash(e.message, 'danger')
            return render_template('post_form.html', post=request.form,
                                   action=url_for('edit_post', slug=slug)), e.status_code
        flash("Post updated successfully!", "success")
        return redirect(url_for('view_post', slug=post['slug']))

    post = posts.require_author(store, slug, current_context())
    form = dict(post, tags=', '.join(post.get('tags', [])))
    return render_template('post_form.html', post=form, action=url_for('edit_post', slug=slug))


@app.route('/delete-post/<slug>', methods=['POST'])
@login_required
def delete_post(slug):
    posts.delete_post(store, current_context(), slug, app.config['UPLOAD_FOLDER'])
    flash('Post deleted successfully.', 'success')
    return redirect(url_for('index'))


@app.route('/post/<slug>')
def view_post(slug):
    post = posts.get_post(store, slug, current_context())
    return render_template('view_post.html', post=post)


@app.route('/post/<slug>/like', methods=['POST'])
def like_post(slug):
    try:
        liked, likes = posts.toggle_like(store, slug, current_context())
    except BlogError as e:
        return jsonify({'success': False, 'message': e.message}), e.status_code
    except PyMongoError as e:
        app.logger.error(f"Error toggling like on {slug}: {e}", exc_info=True)
        return jsonify({'success': False, 'message': 'Server error'}), 500
    return jsonify({'success': True, 'liked': liked, 'likes': likes})


@app.route('/post/<slug>/comment', methods=['POST'])
def comment_post(slug):
    try:
        posts.add_comment(store, slug, current_context(), request.form.get('content'))
    except ValidationError as e:
        flash(e.message, 'danger')
    return redirect(url_for('view_post', slug=slug))


@app.route('/tags/<tagname>')
def posts_by_tag(tagname):
    post_list = posts.posts_by_tag(store, tagname, current_context())
    return render_template('post_list.html', posts=post_list, heading=f"Posts tagged with: #{tagname}")


@app.route('/search')
def search():
    query = request.args.get('query', '')
    post_list = posts.search_posts(store, query, current_context())
    return render_template('post_list.html', posts=post_list, heading=f'Search results for: "{query}"',
                           query=query)


@app.route('/uploads/<filename>')
def uploaded_file(filename):
    return send_from_directory(app.config['UPLOAD_FOLDER'], filename)


# Handles any possible errors

@app.errorhandler(BlogError)
def handle_blog_error(e):
    if isinstance(e, ServerError) or e.status_code >= 500:
        app.logger.error(f"{type(e).__name__} on {request.path}: {e.message}", exc_info=e.__cause__ is not None)
    if wants_json():
        return jsonify({'success': False, 'message': e.message}), e.status_code
    if isinstance(e, AuthError):
        flash('Please log in to continue.', 'danger')
        return redirect(url_for('login', next=login_return_path()))
    return render_template('error.html', status=e.status_code, message=e.message), e.status_code


@app.errorhandler(PyMongoError)
def handle_storage_error(e):
    app.logger.error(f"Database error on {request.path}: {e}", exc_info=True)
    return handle_blog_error(ServerError())


@app.errorhandler(404)
def page_not_found(e):
    return render_template('error.html', status=404,
                           message='The page you are looking for does not exist.'), 404


@app.errorhandler(500)
def internal_server_error(e):
    app.logger.error(f"Internal Server Error on {request.path}: {e}", exc_info=True)
    return render_template('error.html', status=500, message='Something went wrong on the server.'), 500


@app.cli.command('init-db')
def init_db():
    """Create the MongoDB indexes the application relies on."""
    store.ensure_indexes()
    click.echo('Indexes created.')


if __name__ == '__main__':
    store.ensure_indexes()
    app.run(debug=env_flag('FLASK_DEBUG', 'false'))
