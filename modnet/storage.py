import os
import secrets
import time

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app
from werkzeug.utils import secure_filename

from .errors import ForbiddenError, GoneError, ValidationError


class AttachmentStore:
    """
    Private attachment files kept under one root folder, one sub-folder per
    auth user. Files are never served by path; callers hand out a signed token
    (a Fernet encryption of the relative path) that expires.
    """

    def __init__(self, root, key):
        self.root = os.path.abspath(root)
        self.fernet = Fernet(key)
        os.makedirs(self.root, exist_ok=True)

    def _full_path(self, path):
        full = os.path.abspath(os.path.join(self.root, path))
        if os.path.commonpath([self.root, full]) != self.root or full == self.root:
            raise ForbiddenError('Invalid attachment path')
        return full

    def save(self, file_storage, owner):
        if file_storage is None or not file_storage.filename:
            raise ValidationError('No file uploaded')

        original = file_storage.filename
        safe = secure_filename(original)
        ext = safe.rsplit('.', 1)[1].lower() if '.' in safe else 'bin'
        name = f'{int(time.time() * 1000)}-{secrets.token_hex(4)}.{ext}'
        folder = secure_filename(str(owner))
        if not folder:
            raise ValidationError('Invalid owner')

        path = f'{folder}/{name}'
        full = self._full_path(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        file_storage.save(full)
        return {'path': path, 'name': original}

    def exists(self, path):
        try:
            return os.path.isfile(self._full_path(path))
        except ForbiddenError:
            return False

    def open_path(self, path):
        """Absolute file path for a stored attachment, for send_file."""
        full = self._full_path(path)
        if not os.path.isfile(full):
            raise GoneError('Attachment is no longer available')
        return full

    def owned_by(self, path, owner):
        return bool(path) and path.split('/', 1)[0] == str(owner) and self.exists(path)

    def list(self, owner):
        folder = os.path.join(self.root, secure_filename(str(owner)))
        if not os.path.isdir(folder):
            return []
        return sorted(f'{owner}/{name}' for name in os.listdir(folder))

    def remove(self, paths):
        removed = 0
        for path in paths:
            full = self._full_path(path)
            if os.path.isfile(full):
                os.remove(full)
                removed += 1
        return removed

    def remove_owner(self, owner):
        """Delete every stored file of one owner; returns how many went."""
        removed = self.remove(self.list(owner))
        folder = os.path.join(self.root, secure_filename(str(owner)))
        if os.path.isdir(folder) and not os.listdir(folder):
            os.rmdir(folder)
        return removed

    def sign(self, path):
        """
        Token for a stored path. Fernet stamps the issue time into the token;
        the lifetime is applied when it is resolved.
        """
        self._full_path(path)
        return self.fernet.encrypt(path.encode('utf-8')).decode('ascii')

    def resolve(self, token, ttl):
        try:
            path = self.fernet.decrypt(token.encode('ascii'), ttl=ttl).decode('utf-8')
        except (InvalidToken, UnicodeError, ValueError):
            raise ForbiddenError('Invalid or expired link')
        self._full_path(path)
        return path


def attachments():
    """The AttachmentStore of the running app."""
    return current_app.extensions['modnet.attachments']
