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


# http_client.py
import logging
import re
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Optional, Tuple

import chardet
import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import MaxRetryError

from browser_emulator import DEFAULT_USER_AGENT, get_request_headers
from download_config import DEFAULT_CONCURRENCY, RetryPolicy
from download_errors import NetworkError, RunCancelled

logger = logging.getLogger(__name__)

CHARSET_REGEX = re.compile(r'charset=["\']?([\w.:-]+)', re.IGNORECASE)

# How often a thread waiting for a free slot re-checks for cancellation
SLOT_POLL_INTERVAL = 0.2


def detect_encoding(content: bytes) -> str:
    result = chardet.detect(content)
    return result['encoding'] if result['encoding'] else 'utf-8'


def create_session(pool_size: int = DEFAULT_CONCURRENCY) -> requests.Session:
    session = requests.Session()
    # HttpClient drives the retries so a waiting request does not hold its slot
    adapter = HTTPAdapter(
        max_retries=0,
        pool_connections=max(pool_size, 10),
        pool_maxsize=max(pool_size, 10),
        pool_block=False
    )
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    session.headers.update({
        "User-Agent": DEFAULT_USER_AGENT,
        "Accept-Encoding": "gzip, deflate",
        "Connection": "keep-alive",
    })
    return session


class HttpResponse:
    """A fully read response."""

    def __init__(self, url: str, status_code: int, headers: Dict[str, str], content: bytes):
        self.url = url
        self.status_code = status_code
        self.headers = headers
        self.content = content

    @property
    def content_type(self) -> Optional[str]:
        value = self.headers.get('Content-Type') or self.headers.get('content-type')
        if not value:
            return None
        return value.split(';', 1)[0].strip().lower() or None

    @property
    def charset(self) -> Optional[str]:
        value = self.headers.get('Content-Type') or self.headers.get('content-type') or ''
        match = CHARSET_REGEX.search(value)
        return match.group(1) if match else None

    @property
    def text(self) -> str:
        encoding = self.charset or detect_encoding(self.content)
        try:
            return self.content.decode(encoding, errors='replace')
        except LookupError:
            return self.content.decode('utf-8', errors='replace')


class HttpClient:
    """
    The single network entry point of a run.

    Every request holds one slot of a shared in-flight budget while it is on the
    wire, so concurrent cases never exceed `concurrency_limit` together. Slots are
    released while backing off between retries.
    """

    def __init__(
        self,
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        retry: Optional[RetryPolicy] = None,
        timeout: Tuple[float, float] = (10.0, 30.0),
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        http_handling: str = "redirect_to_https",
        proxy: Optional[str] = None,
    ):
        self.concurrency_limit = concurrency_limit
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self.session = session if session is not None else create_session(concurrency_limit)
        self.cancel_event = cancel_event
        self.http_handling = http_handling
        self.proxy = proxy
        self._sleep = sleep or self._wait
        self._slots = threading.BoundedSemaphore(concurrency_limit)
        self._stats_lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0
        self.request_count = 0

    # --- Cancellation ---

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled("Run cancelled by caller")

    def _wait(self, delay: float) -> None:
        if self.cancel_event is None:
            time.sleep(delay)
        elif self.cancel_event.wait(delay):
            raise RunCancelled("Run cancelled by caller")

    # --- In-flight budget ---

    @contextmanager
    def _slot(self):
        while not self._slots.acquire(timeout=SLOT_POLL_INTERVAL):
            self.check_cancelled()
        try:
            self.check_cancelled()
            with self._stats_lock:
                self.in_flight += 1
                self.request_count += 1
                self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                yield
            finally:
                with self._stats_lock:
                    self.in_flight -= 1
        finally:
            self._slots.release()

    # --- Requests ---

    def _prepare_url(self, url: str) -> str:
        if url.startswith("http://"):
            if self.http_handling == "redirect_to_https":
                url = "https://" + url[len("http://"):]
            elif self.http_handling == "disallow":
                raise NetworkError(f"Insecure HTTP is disallowed: {url}", url=url)
        if self.proxy:
            url = self.proxy + url
        return url

    def get(self, url: str, referer: Optional[str] = None, sec_fetch_dest: Optional[str] = None) -> HttpResponse:
        """
        GET `url` with the run's retry policy.
        Raises NetworkError (with `status_code` for HTTP errors) once retries are
        exhausted or on the first permanent failure.
        """
        target = self._prepare_url(url)
        headers = get_request_headers(url, referring_page_url=referer, sec_fetch_dest_override=sec_fetch_dest)
        retry = self.retry.build_retry()
        attempt = 0
        while True:
            attempt += 1
            self.check_cancelled()
            cause = None
            try:
                with self._slot():
                    response = self.session.get(target, headers=headers, timeout=self.timeout, allow_redirects=True)
                    content = response.content
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError,
                    requests.exceptions.ChunkedEncodingError) as e_net:
                error = NetworkError(f"{type(e_net).__name__} for {url}: {e_net}", url=url, transient=True)
                cause = e_net
            except requests.exceptions.RequestException as e_req:
                raise NetworkError(f"{type(e_req).__name__} for {url}: {e_req}", url=url) from e_req
            else:
                status = response.status_code
                if status < 400:
                    final_url = getattr(response, 'url', None) or url
                    if self.proxy and final_url.startswith(self.proxy):
                        final_url = final_url[len(self.proxy):]
                    return HttpResponse(final_url, status, dict(response.headers), content)
                error = NetworkError(f"HTTP {status} for {url}", url=url, status_code=status,
                                     transient=retry.is_retry("GET", status))
                if not error.transient:
                    raise error

            try:
                retry = retry.increment("GET", url, error=cause)
            except MaxRetryError:
                logger.warning("Giving up on %s after %d attempt(s): %s", url, attempt, error)
                raise error from cause
            delay = retry.get_backoff_time()
            logger.debug("Retrying %s in %.2fs (attempt %d/%d): %s",
                         url, delay, attempt + 1, self.retry.max_attempts, error)
            # The slot is free while waiting
            self._sleep(delay)

    def get_text(self, url: str, referer: Optional[str] = None, sec_fetch_dest: Optional[str] = None) -> str:
        return self.get(url, referer=referer, sec_fetch_dest=sec_fetch_dest).text

    def close(self) -> None:
        self.session.close()
