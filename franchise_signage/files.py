"""
@file_manager
Content file storage on local disk
"""

import os
import time
import random
import logging
from typing import Iterable, Tuple

from werkzeug.utils import secure_filename

from .errors import ValidationError

logger = logging.getLogger(__name__)


class FileManager:
    """Handles file upload, validation, and storage operations"""

    def __init__(self, content_folder: str, allowed_mime_types: Iterable[str]):
        self.content_folder = content_folder
        self.allowed_mime_types = set(allowed_mime_types)
        os.makedirs(self.content_folder, exist_ok=True)

    def is_allowed(self, mime_type: str) -> bool:
        """@file_validation - Check the MIME type against the allow-list"""
        return mime_type in self.allowed_mime_types

    def unique_filename(self, original_name: str) -> str:
        base, ext = os.path.splitext(secure_filename(original_name) or 'upload')
        suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10 ** 9)}"
        return f"{base}-{suffix}{ext.lower()}"

    def save_uploaded_file(self, file) -> Tuple[str, int, str]:
        """@file_upload - Save an uploaded file and return (filename, size, mime type)"""
        if file is None or not file.filename:
            raise ValidationError('No file provided')
        mime_type = (file.mimetype or '').lower()
        if not self.is_allowed(mime_type):
            raise ValidationError(
                f"Invalid file type: {mime_type}. Allowed: {', '.join(sorted(self.allowed_mime_types))}")

        filename = self.unique_filename(file.filename)
        file_path = os.path.join(self.content_folder, filename)
        file.save(file_path)
        return filename, os.path.getsize(file_path), mime_type

    def delete_file(self, filename: str) -> bool:
        """@file_deletion - Delete physical file from storage"""
        if not filename:
            return False
        file_path = os.path.join(self.content_folder, secure_filename(filename))
        try:
            if os.path.exists(file_path):
                os.remove(file_path)
                return True
        except OSError as e:
            logger.error(f"File deletion error: {e}")
        return False
