# AAO Offline - a tool for playing Ace Attorney Online cases offline.
# Copyright (C) 2025 DragonsWho <dragonswho@gmail.com>
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Lesser General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with this program; if not, see <https://www.gnu.org/licenses/>.


# asset_fetcher.py
import hashlib
import logging
import mimetypes
import posixpath
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

import filetype

from case_models import STATUS_FAILED, STATUS_FETCHED, AssetRecord, AssetReference, AssetRole
from download_errors import AssetError, NetworkError
from http_client import HttpClient, HttpResponse
from player_template import PLAYER_PAGE_URL
from url_utils import sanitize_filename_component, url_extension

logger = logging.getLogger(__name__)

GENERIC_CONTENT_TYPES = {
    "application/octet-stream", "binary/octet-stream", "application/unknown",
    "application/x-download", "application/force-download", "text/plain",
}
HTML_CONTENT_TYPES = {"text/html", "application/xhtml+xml"}

# Preferred extension per type where mimetypes picks an unusual one
PREFERRED_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/svg+xml": ".svg",
    "image/x-icon": ".ico",
    "image/vnd.microsoft.icon": ".ico",
    "audio/mpeg": ".mp3",
    "audio/ogg": ".ogg",
    "audio/opus": ".opus",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "application/javascript": ".js",
    "text/javascript": ".js",
    "font/woff": ".woff",
    "font/woff2": ".woff2",
}
# Extensions that stay valid for a type even though mimetypes disagrees
COMPATIBLE_EXTENSIONS = {
    "audio/ogg": {".ogg", ".oga", ".opus"},
    "audio/opus": {".opus", ".ogg"},
    "audio/x-wav": {".wav"},
    "audio/wav": {".wav"},
    "audio/mpeg": {".mp3", ".mpga"},
    "image/jpeg": {".jpg", ".jpeg", ".jpe"},
}

CONTENT_DISPOSITION_REGEX = re.compile(r"""filename\*?=(?:UTF-8'')?["']?([^"';]+)["']?""", re.IGNORECASE)

STEM_MAX_LENGTH = 80
HASH_WIDTHS = (10, 16, 40)

ProgressCallback = Callable[[str, str], None]
PostProcessor = Callable[[AssetRecord], AssetRecord]


def type_for_extension(ext: str) -> Optional[str]:
    if not ext:
        return None
    guessed, _ = mimetypes.guess_type("file" + ext)
    return guessed


def determine_content_type(content: bytes, declared: Optional[str], source_ext: str) -> str:
    """Declared type unless missing or generic, then magic numbers, then the extension."""
    declared = (declared or "").lower()
    if declared and declared not in GENERIC_CONTENT_TYPES:
        return declared
    kind = filetype.guess(content)
    if kind is not None:
        return kind.mime
    return type_for_extension(source_ext) or declared or "application/octet-stream"


def extension_for(content_type: Optional[str], source_ext: str, default_extension: Optional[str] = None) -> str:
    """The source extension when it agrees with the content type, else one derived from the type."""
    if content_type and content_type != "application/octet-stream":
        if source_ext:
            if source_ext in COMPATIBLE_EXTENSIONS.get(content_type, ()) \
                    or source_ext in mimetypes.guess_all_extensions(content_type) \
                    or type_for_extension(source_ext) == content_type:
                return source_ext
        derived = PREFERRED_EXTENSIONS.get(content_type) or mimetypes.guess_extension(content_type)
        if derived:
            return derived
    if source_ext:
        return source_ext
    if default_extension:
        return "." + default_extension.lstrip(".")
    return ".bin"


def source_filename(url: str, content_disposition: Optional[str] = None) -> str:
    if content_disposition:
        match = CONTENT_DISPOSITION_REGEX.search(content_disposition)
        if match:
            return unquote(match.group(1).strip())
    return unquote(posixpath.basename(urlparse(url).path))


class NameRegistry:
    """Local names claimed within one output. Same URL, same name."""

    def __init__(self):
        self._owners: Dict[str, str] = {}
        self._lock = threading.Lock()

    def claim(self, url: str, stem: str, ext: str) -> str:
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()
        with self._lock:
            for width in HASH_WIDTHS:
                name = f"{stem}-{digest[:width]}{ext}".lower()
                owner = self._owners.get(name)
                if owner is None or owner == url:
                    self._owners[name] = url
                    return name
            counter = 2
            while True:
                name = f"{stem}-{digest}-{counter}{ext}".lower()
                if self._owners.get(name) in (None, url):
                    self._owners[name] = url
                    return name
                counter += 1

    def __len__(self):
        return len(self._owners)


class Fetcher:
    def __init__(
        self,
        client: HttpClient,
        names: Optional[NameRegistry] = None,
        post_processors: Sequence[PostProcessor] = (),
        referer: str = PLAYER_PAGE_URL,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.client = client
        self.names = names or NameRegistry()
        self.post_processors = list(post_processors)
        self.referer = referer
        self.progress_callback = progress_callback

    def _notify(self, type_str: str, url: str) -> None:
        if self.progress_callback:
            self.progress_callback(type_str, url)

    def local_name(self, reference: AssetReference, filename: str, content_type: Optional[str]) -> str:
        stem, source_ext = posixpath.splitext(filename)
        stem = sanitize_filename_component(stem)[:STEM_MAX_LENGTH] or reference.role.value
        ext = extension_for(content_type, source_ext.lower(), reference.default_extension)
        return self.names.claim(reference.url, stem, ext)

    def _failed(self, reference: AssetReference, reason: str) -> AssetRecord:
        filename = source_filename(reference.url)
        source_ext = url_extension(reference.url) or (
            "." + reference.default_extension if reference.default_extension else "")
        content_type = type_for_extension(source_ext)
        record = AssetRecord(reference, self.local_name(reference, filename, content_type), STATUS_FAILED,
                             content_type=content_type, error=AssetError(reference.url, reason))
        logger.warning("Asset failed: %s (%s)", reference.url, reason)
        self._notify("failed", f"{reference.url} ({reason})")
        return record

    def _check_payload(self, reference: AssetReference, response: HttpResponse) -> Optional[str]:
        if not response.content:
            return "empty payload"
        if response.content_type in HTML_CONTENT_TYPES and reference.role != AssetRole.MARKUP \
                and filetype.guess(response.content) is None:
            return "received an HTML page instead of the asset"
        return None

    def fetch_one(self, reference: AssetReference) -> AssetRecord:
        """Fetches one asset. Failures become a failed record; only cancellation propagates."""
        try:
            response = self.client.get(reference.url, referer=self.referer)
        except NetworkError as e_net:
            return self._failed(reference, str(e_net))

        problem = self._check_payload(reference, response)
        if problem:
            return self._failed(reference, problem)

        filename = source_filename(response.url or reference.url, response.headers.get("Content-Disposition"))
        source_ext = posixpath.splitext(filename)[1].lower() or (
            "." + reference.default_extension if reference.default_extension else "")
        content_type = determine_content_type(response.content, response.content_type, source_ext)
        record = AssetRecord(reference, self.local_name(reference, filename, content_type), STATUS_FETCHED,
                             content=response.content, content_type=content_type)
        for processor in self.post_processors:
            record = processor(record)
        logger.debug("Downloaded %s -> %s (%s)", reference.url, record.local_name, content_type)
        self._notify("downloaded", reference.url)
        return record

    def fetch_all(self, refs: Iterable[AssetReference], concurrency_limit: Optional[int] = None) -> Iterator[AssetRecord]:
        """
        Fetches every unique reference and yields records as they complete.
        One-shot: calling it again fetches everything again.
        """
        unique: Dict[str, AssetReference] = {}
        for ref in refs:
            unique.setdefault(ref.url, ref)
        max_workers = concurrency_limit or self.client.concurrency_limit
        if max_workers < 1:
            raise ValueError("concurrency_limit must be a positive integer")

        executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="AssetFetcher")
        try:
            futures = {executor.submit(self.fetch_one, ref): url for url, ref in sorted(unique.items())}
            for future in as_completed(futures):
                yield future.result()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)


def partition_records(records: Iterable[AssetRecord]) -> Tuple[List[AssetRecord], List[AssetRecord]]:
    fetched, failed = [], []
    for record in records:
        (fetched if record.ok else failed).append(record)
    return fetched, failed
