"""
Delivery of finished videos.

Encoded files are copied into the exports directory under <job_id>.<format>
and served exactly once: the download route deletes the file after the
transfer completes.
"""

import os
import shutil
import logging

from config import CONTENT_TYPES, EXPORTS_DIR, PUBLIC_BASE_URL
from exceptions import ArtifactNotFoundError, InvalidFilenameError


def validate_filename(filename: str) -> str:
    """Reject anything that could leave the exports directory. No filesystem access."""
    if not filename or filename in (".", ".."):
        raise InvalidFilenameError()
    if "/" in filename or "\\" in filename or ".." in filename or "\x00" in filename:
        raise InvalidFilenameError()
    return filename


class DeliveryService:
    def __init__(self, exports_dir: str = EXPORTS_DIR, public_base_url: str = PUBLIC_BASE_URL):
        self.exports_dir = exports_dir
        self.public_base_url = public_base_url.rstrip("/")

    def publish(self, source_path: str, job_id: str, video_format: str) -> str:
        """Copy an encoded file into the exports directory. Returns its public filename."""
        os.makedirs(self.exports_dir, exist_ok=True)
        filename = validate_filename(f"{job_id}.{video_format}")
        shutil.copyfile(source_path, os.path.join(self.exports_dir, filename))
        logging.info(f"[Job {job_id}] Saved locally to: {os.path.join(self.exports_dir, filename)}")
        return filename

    def download_url(self, filename: str) -> str:
        return f"{self.public_base_url}/download/{filename}"

    def resolve(self, filename: str) -> str:
        path = os.path.join(self.exports_dir, validate_filename(filename))
        if not os.path.isfile(path):
            raise ArtifactNotFoundError()
        return path

    def content_type(self, filename: str) -> str:
        extension = os.path.splitext(filename)[1].lstrip(".").lower()
        return CONTENT_TYPES.get(extension, "application/octet-stream")

    def discard(self, filename: str):
        """Remove a served file. Missing files are fine, another request may have won."""
        path = os.path.join(self.exports_dir, validate_filename(filename))
        try:
            os.remove(path)
            logging.info(f"[Auto-Cleanup] Download complete. Deleted {filename} from worker disk.")
        except FileNotFoundError:
            pass
        except OSError as e:
            logging.error(f"Failed to delete {filename}: {e}")
