# b2_helper.py
import io
import logging
import os
import threading
from typing import List, Optional, Tuple

from b2sdk.v2 import B2Api, InMemoryAccountInfo
from b2sdk.v2.exception import FileNotPresent

logger = logging.getLogger(__name__)


class B2Manager:
    """
    Backblaze B2 storage for rendered overlays with:
    - automatic re-authorization on expired/bad auth tokens
    - thread-safe authorization
    - byte-level upload/download and prefix listing
    """

    def __init__(self, key_id: str = None, app_key: str = None, bucket_name: str = None):
        self.key_id = key_id or os.getenv("BACKBLAZE_KEY_ID")
        self.app_key = app_key or os.getenv("BACKBLAZE_APPLICATION_KEY")
        self.bucket_name = bucket_name or os.getenv("BACKBLAZE_BUCKET_NAME")

        if not self.key_id or not self.app_key:
            raise ValueError("Missing BACKBLAZE_KEY_ID / BACKBLAZE_APPLICATION_KEY")
        if not self.bucket_name:
            raise ValueError("Missing BACKBLAZE_BUCKET_NAME")

        self.info = InMemoryAccountInfo()
        self.b2_api = B2Api(self.info)

        self._auth_lock = threading.RLock()
        # tokens expire, so this only records that we authorized at least once
        self._authorized_once = False

    def _authorize_account(self) -> None:
        self.b2_api.authorize_account("production", self.key_id, self.app_key)
        self._authorized_once = True
        logger.info("B2 account authorized for bucket '%s'", self.bucket_name)

    def _ensure_authorized(self) -> None:
        with self._auth_lock:
            if not self._authorized_once:
                self._authorize_account()

    @staticmethod
    def _looks_like_auth_error(exc: Exception) -> bool:
        s = str(exc).lower()
        # b2sdk exceptions vary; this catches common signals
        return ("expired_auth_token" in s) or ("bad_auth_token" in s) or ("unauthorized" in s)

    def _with_reauth_retry(self, fn, *args, **kwargs):
        """
        Run a B2 operation; if it fails due to auth token expiry, reauth and retry once.
        """
        self._ensure_authorized()

        try:
            return fn(*args, **kwargs)
        except FileNotPresent:
            raise
        except Exception as e:
            if self._looks_like_auth_error(e):
                logger.warning("B2 auth error detected; re-authorizing and retrying once. err=%s", e)
                with self._auth_lock:
                    self._authorize_account()
                return fn(*args, **kwargs)
            raise

    def get_bucket(self):
        return self._with_reauth_retry(self.b2_api.get_bucket_by_name, self.bucket_name)

    def upload_bytes(self, data: bytes, file_name: str, content_type: str = "image/jpeg") -> None:
        bucket = self.get_bucket()
        logger.info(
            "Uploading %s to B2 bucket '%s' (%.1f KB)", file_name, self.bucket_name, len(data) / 1024
        )

        def _do_upload():
            bucket.upload_bytes(data, file_name, content_type=content_type)

        self._with_reauth_retry(_do_upload)

    def download_bytes(self, file_name: str) -> Optional[bytes]:
        """Return the object's bytes, or None when it doesn't exist."""
        bucket = self.get_bucket()

        def _do_download():
            buf = io.BytesIO()
            bucket.download_file_by_name(file_name).save(buf)
            return buf.getvalue()

        try:
            return self._with_reauth_retry(_do_download)
        except FileNotPresent:
            logger.debug("B2 object not found: %s", file_name)
            return None

    def list_files(self, prefix: str) -> List[Tuple[str, int]]:
        """(file_name, upload_timestamp_ms) for every latest version under prefix."""
        bucket = self.get_bucket()

        def _do_list():
            return [
                (file_version.file_name, file_version.upload_timestamp)
                for file_version, _folder in bucket.ls(folder_to_list=prefix, recursive=True)
            ]

        return self._with_reauth_retry(_do_list)

    def delete_file(self, file_name: str) -> bool:
        """
        Delete all versions of a file.
        """
        bucket = self.get_bucket()

        def _do_delete():
            if "/" in file_name:
                folder_path = "/".join(file_name.split("/")[:-1]) + "/"
            else:
                folder_path = ""

            file_versions = []
            for file_version_info, _folder in bucket.ls(
                folder_to_list=folder_path,
                latest_only=False,
                recursive=True,
            ):
                if file_version_info.file_name == file_name:
                    file_versions.append(file_version_info)

            if not file_versions:
                return False

            for v in file_versions:
                self.b2_api.delete_file_version(file_id=v.id_, file_name=v.file_name)
            logger.info("Deleted %d version(s) of %s", len(file_versions), file_name)
            return True

        return self._with_reauth_retry(_do_delete)


_b2_manager: Optional[B2Manager] = None


def get_b2_manager() -> B2Manager:
    global _b2_manager
    if _b2_manager is None:
        _b2_manager = B2Manager()
    return _b2_manager
