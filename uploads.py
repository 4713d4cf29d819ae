"""Attachment storage: whitelisted extensions, size limit, collision-free names."""

import logging
import mimetypes
import os
import secrets
import string
from datetime import datetime, timezone

from werkzeug.utils import secure_filename

from chat_errors import InvalidInput

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_EXTS = {
    "png", "jpg", "jpeg", "gif", "webp",
    "mp4", "webm", "mov",
    "mp3", "ogg", "wav", "m4a",
    "pdf", "txt", "zip",
}


def safe_ext(name: str) -> str:
    if "." not in (name or ""):
        return ""
    return name.rsplit(".", 1)[-1].lower()


def unique_name(base: str) -> str:
    base = secure_filename(base or "file") or "file"
    root, ext = os.path.splitext(base)
    ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    rand = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"{root}_{ts}_{rand}{ext}"


def save_upload(file, folder: str, allowed_exts=None, max_bytes: int = None) -> dict:
    """Store a werkzeug FileStorage and return attachment metadata for the message store."""
    if file is None or not file.filename:
        raise InvalidInput("No file provided")
    # secure_filename drops non-ASCII letters, so read the extension off the raw name
    ext = safe_ext(file.filename)
    if ext not in (allowed_exts or DEFAULT_ALLOWED_EXTS):
        raise InvalidInput("File type not allowed")
    original = secure_filename(file.filename)
    if safe_ext(original) != ext:
        original = f"upload.{ext}"
    file.stream.seek(0, os.SEEK_END)
    size = file.stream.tell()
    file.stream.seek(0)
    if size == 0:
        raise InvalidInput("File is empty")
    if max_bytes and size > max_bytes:
        raise InvalidInput("File too large")
    os.makedirs(folder, exist_ok=True)
    name = unique_name(original)
    file.save(os.path.join(folder, name))
    logger.info("Stored upload %s (%d bytes)", name, size)
    return {
        "path": name,
        "name": original,
        "mime": file.mimetype or mimetypes.guess_type(original)[0] or "application/octet-stream",
        "size": size,
    }


def remove_upload(folder: str, name: str):
    if not name:
        return
    path = os.path.join(folder, secure_filename(name))
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.debug("Upload %s already gone", name)
