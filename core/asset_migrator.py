"""
Asset relocation between two media host accounts.

``AssetMigrator.migrate`` downloads an asset from the source account once,
re-uploads it to the destination account under an equivalent public
identifier and remembers the URL -> URL mapping for the rest of the run.
Failures never fabricate a destination URL: the original URL is returned and
the failure is counted.
"""

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional
from urllib.parse import urlparse

from core.errors import AssetTransferError
from core.value_visitor import rewrite_urls, visit

logger = logging.getLogger(__name__)

_VERSION_SEGMENT = re.compile(r"^v\d+$")
_EXTENSION = re.compile(r"\.[^/.]+$")
_RESOURCE_TYPES = ('image', 'video', 'raw')

DEFAULT_FOLDER = "migrated"

# (table name fragment, destination folder), first match wins
TABLE_FOLDERS = (
    ('team', 'team'),
    ('news', 'news'),
    ('partner', 'partners'),
    ('about', 'about-us'),
)


@dataclass(frozen=True)
class AssetReference:
    """What a delivery URL says about the asset it points at"""
    resource_type: str
    public_id: str  # path identifier without version segment and extension

    @property
    def basename(self) -> str:
        return self.public_id.rsplit('/', 1)[-1]


def extract_public_id(url: str, delivery_host: str = "res.cloudinary.com") -> Optional[AssetReference]:
    """
    Derive the public identifier from a delivery URL of the form
    ``https://<host>/<cloud>/<resource_type>/upload/[<transformations>/][v<digits>/]<id>.<ext>``.

    Returns ``None`` for URLs that are not ``upload`` deliveries on ``delivery_host``.
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.hostname != delivery_host:
        return None

    parts = [p for p in parsed.path.split('/') if p]
    if 'upload' not in parts:
        return None
    upload_index = parts.index('upload')

    resource_type = 'image'
    if upload_index >= 1 and parts[upload_index - 1] in _RESOURCE_TYPES:
        resource_type = parts[upload_index - 1]

    after_upload = parts[upload_index + 1:]
    # Drop everything up to and including the version segment; anything
    # before it is a transformation chain.
    for i, segment in enumerate(after_upload):
        if _VERSION_SEGMENT.match(segment):
            after_upload = after_upload[i + 1:]
            break

    if not after_upload:
        return None

    public_id = _EXTENSION.sub('', '/'.join(after_upload))
    if not public_id:
        return None
    return AssetReference(resource_type=resource_type, public_id=public_id)


def folder_for_table(table_name: str) -> str:
    """Destination folder for assets found in ``table_name``."""
    lowered = table_name.lower()
    for fragment, folder in TABLE_FOLDERS:
        if fragment in lowered:
            return folder
    return DEFAULT_FOLDER


class AssetMigrator:
    """Run-scoped, single-flight URL migration with a URL -> URL cache"""

    def __init__(self, source_host, target_host, work_dir: Optional[Path] = None):
        self.source_host = source_host
        self.target_host = target_host
        self.work_dir = Path(work_dir) if work_dir else Path(tempfile.gettempdir())
        self.pattern = source_host.url_pattern()
        self._cache: Dict[str, str] = {}

        self.migrated = 0
        self.failed = 0
        self.cache_hits = 0

    @property
    def cache(self) -> Mapping[str, str]:
        return MappingProxyType(self._cache)

    def is_source_asset(self, url: str) -> bool:
        return bool(url) and self.pattern.fullmatch(url) is not None

    def _buffer_file(self, url: str) -> Path:
        try:
            fd, tmp_name = tempfile.mkstemp(prefix="asset-", dir=self.work_dir)
        except OSError as e:
            raise AssetTransferError(f"Could not create a download buffer in {self.work_dir}: {e}", url=url) from e
        os.close(fd)
        return Path(tmp_name)

    def migrate(self, url: str, folder: Optional[str] = None) -> str:
        """Return the destination URL for ``url``, migrating it on first sight."""
        if not self.is_source_asset(url):
            return url

        cached = self._cache.get(url)
        if cached is not None:
            self.cache_hits += 1
            return cached

        reference = extract_public_id(url, self.source_host.account.delivery_host)
        if reference is None:
            logger.warning(f"  Could not derive a public id from {url}, keeping original URL")
            self.failed += 1
            return url

        logger.info(f"  Downloading: {url}")
        tmp_path = None
        try:
            tmp_path = self._buffer_file(url)
            self.source_host.download(url, tmp_path)
            logger.info(f"  Uploading {reference.public_id} to destination...")
            new_url = self.target_host.upload(
                tmp_path,
                public_id=reference.basename,
                folder=folder or DEFAULT_FOLDER,
                resource_type=reference.resource_type,
            )
        except AssetTransferError as e:
            logger.warning(f"  Asset not migrated, keeping original URL: {e}")
            self.failed += 1
            return url
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)

        logger.info(f"  Migrated: {new_url}")
        self._cache[url] = new_url
        self.migrated += 1
        return new_url

    def migrate_value(self, value, folder: Optional[str] = None):
        """Rewrite every source asset URL found anywhere inside ``value``."""
        return visit(value, lambda text: rewrite_urls(text, self.pattern,
                                                      lambda url: self.migrate(url, folder)))
