import logging
import os
import time

from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

from errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif'}
UPLOAD_URL_PREFIX = '/uploads/'


def allowed_image(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_IMAGE_EXTENSIONS


def save_image(file_storage, upload_folder):
    """Save an uploaded image and return the path stored on the document.

    Returns None when no file was submitted. The file is checked with Pillow
    after saving so a renamed non-image never stays on disk.
    """
    if not file_storage or not file_storage.filename:
        return None
    if not allowed_image(file_storage.filename):
        raise ValidationError("Invalid image format. Please use png, jpg, jpeg, or gif.")

    filename = secure_filename(f"{int(time.time() * 1000)}-{file_storage.filename}")
    os.makedirs(upload_folder, exist_ok=True)
    path = os.path.join(upload_folder, filename)
    file_storage.save(path)

    try:
        with Image.open(path) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        logger.warning(f"Rejected upload {filename}: {e}")
        os.remove(path)
        raise ValidationError("The uploaded file is not a valid image.")

    logger.info(f"Saved upload {filename}")
    return UPLOAD_URL_PREFIX + filename


def remove_image(stored_path, upload_folder):
    """Delete the file behind a stored `/uploads/<name>` path, if any."""
    if not stored_path or not stored_path.startswith(UPLOAD_URL_PREFIX):
        return False
    filename = secure_filename(stored_path[len(UPLOAD_URL_PREFIX):])
    if not filename:
        return False
    path = os.path.join(upload_folder, filename)
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.error(f"Failed to remove upload {path}: {e}")
        return False
    logger.info(f"Removed upload {filename}")
    return True
