#!/usr/bin/env python3
"""
Media Host Adapter - Cloudinary over plain HTTP

This module implements the only two media-host capabilities the migration
needs:

- fetch the bytes behind a public delivery URL (read-only ``GET``)
- upload bytes under a public identifier, optionally inside a folder, with
  overwrite semantics (signed ``POST`` to the upload API)

There is intentionally no delete/rename/admin surface: the same class is used
for the source account, which must never be modified.

Usage:
    host = CloudinaryAdapter(MediaAccount("demo", "key", "secret"))
    host.download("https://res.cloudinary.com/demo/image/upload/v1/a.jpg", path)
    url = host.upload(path, public_id="a", folder="team")
"""

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Pattern

import requests
from cloudinary.utils import api_sign_request

from core.errors import AssetTransferError

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_HOST = "res.cloudinary.com"
DEFAULT_API_BASE_URL = "https://api.cloudinary.com/v1_1"

# Parameters Cloudinary excludes from the signature base string
_UNSIGNED_PARAMS = {'file', 'api_key', 'resource_type', 'cloud_name'}


@dataclass
class MediaAccount:
    """Credentials for one media host account"""
    cloud_name: str
    api_key: str
    api_secret: str
    delivery_host: str = DEFAULT_DELIVERY_HOST
    api_base_url: str = DEFAULT_API_BASE_URL
    timeout: float = 60.0


def with_retries(fn: Callable[[], requests.Response], *, max_attempts: int = 3,
                 base_delay: float = 0.7,
                 sleep_fn: Callable[[float], None] = time.sleep) -> requests.Response:
    """
    Execute a function returning a ``requests.Response``, retrying on
    429 and 5xx responses and on connection errors with exponential backoff.

    :raises requests.RequestException: if all attempts fail.
    """
    attempt = 0
    while True:
        try:
            resp = fn()
            resp.raise_for_status()
            return resp
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status not in (429, 500, 502, 503, 504) or attempt >= max_attempts - 1:
                raise
            retry_after = e.response.headers.get("Retry-After")
            try:
                wait = float(retry_after) if retry_after else base_delay * (2 ** attempt)
            except ValueError:
                wait = base_delay * (2 ** attempt)
            sleep_fn(wait)
            attempt += 1
        except requests.RequestException:
            if attempt >= max_attempts - 1:
                raise
            sleep_fn(base_delay * (2 ** attempt))
            attempt += 1


def sign_params(params: Dict[str, object], api_secret: str) -> str:
    """Upload API signature over every signed, non-empty parameter."""
    return api_sign_request(
        {key: value for key, value in params.items()
         if key not in _UNSIGNED_PARAMS and value not in (None, "")},
        api_secret,
    )


class CloudinaryAdapter:
    """Fetch-by-URL and signed upload against one Cloudinary account"""

    def __init__(self, account: MediaAccount, session: Optional[requests.Session] = None,
                 max_attempts: int = 3):
        self.account = account
        self.session = session or requests.Session()
        self.max_attempts = max_attempts
        self.stats = {
            'downloads': 0,
            'uploads': 0,
            'bytes_downloaded': 0,
        }

    @property
    def cloud_name(self) -> str:
        return self.account.cloud_name

    def url_pattern(self) -> Pattern:
        """Regex matching delivery URLs of this account inside free text."""
        host = re.escape(self.account.delivery_host)
        cloud = re.escape(self.account.cloud_name)
        # Stops at whitespace, quotes, angle brackets and parentheses so URLs
        # embedded in HTML attributes or CSS url(...) are matched exactly.
        # Never ends on sentence punctuation.
        return re.compile(rf"https?://{host}/{cloud}/[^\s\"'<>()\\]*[^\s\"'<>()\\.,;:!?]")

    def download(self, url: str, destination: Path) -> int:
        """Stream the bytes behind ``url`` into ``destination``; returns the size."""
        def do_request() -> requests.Response:
            return self.session.get(url, stream=True, timeout=self.account.timeout)

        try:
            resp = with_retries(do_request, max_attempts=self.max_attempts)
        except requests.RequestException as e:
            raise AssetTransferError(f"Download failed for {url}: {e}", url=url) from e

        size = 0
        try:
            with open(destination, "wb") as f:
                for chunk in resp.iter_content(chunk_size=64 * 1024):
                    if chunk:
                        f.write(chunk)
                        size += len(chunk)
        except (requests.RequestException, OSError) as e:
            raise AssetTransferError(f"Download interrupted for {url}: {e}", url=url) from e
        finally:
            resp.close()

        if size == 0:
            raise AssetTransferError(f"Download returned no content for {url}", url=url)

        self.stats['downloads'] += 1
        self.stats['bytes_downloaded'] += size
        return size

    def upload(self, path: Path, public_id: str, folder: Optional[str] = None,
               resource_type: str = "image") -> str:
        """
        Upload the file at ``path`` under ``public_id`` (overwriting any
        existing asset) and return the new secure delivery URL.
        """
        params: Dict[str, object] = {
            'public_id': public_id,
            'overwrite': 'true',
            'timestamp': int(time.time()),
        }
        if folder:
            params['folder'] = folder
        params['signature'] = sign_params(params, self.account.api_secret)
        params['api_key'] = self.account.api_key

        endpoint = f"{self.account.api_base_url}/{self.account.cloud_name}/{resource_type}/upload"

        def do_request() -> requests.Response:
            with open(path, "rb") as f:
                return self.session.post(endpoint, data=params, files={'file': f},
                                         timeout=self.account.timeout)

        try:
            resp = with_retries(do_request, max_attempts=self.max_attempts)
            body = resp.json()
        except requests.RequestException as e:
            detail = e.response.text if getattr(e, 'response', None) is not None else str(e)
            raise AssetTransferError(f"Upload of {public_id} failed: {detail}") from e
        except ValueError as e:
            raise AssetTransferError(f"Upload of {public_id} returned invalid JSON: {e}") from e
        except OSError as e:
            raise AssetTransferError(f"Upload of {public_id} could not read {path}: {e}") from e

        secure_url = body.get('secure_url')
        if not secure_url:
            raise AssetTransferError(f"Upload of {public_id} returned no secure_url")

        self.stats['uploads'] += 1
        return secure_url

    def close(self):
        self.session.close()
