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


# download_config.py
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from urllib3.util.retry import Retry

DEFAULT_PLAYER_VERSION = "master"
DEFAULT_CONCURRENCY = 5

SEQUENCE_MODES = ("none", "every")
ASSET_POLICIES = ("best_effort", "fail_fast")
HTTP_HANDLING_MODES = ("redirect_to_https", "allow_insecure", "disallow")

# 408 Request Timeout, 425 Too Early, 429 Too Many Requests and every 5xx
RETRY_STATUSES = frozenset({408, 425, 429} | set(range(500, 600)))


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient network failures."""
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("retry delays must not be negative")

    def build_retry(self) -> Retry:
        """Fresh retry state for one request. The first retry is immediate."""
        return Retry(
            total=self.max_attempts - 1,
            backoff_factor=self.base_delay,
            backoff_max=self.max_delay,
            backoff_jitter=self.jitter,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=["GET"],
        )


@dataclass
class RunConfig:
    concurrency_limit: int = DEFAULT_CONCURRENCY
    player_version: Optional[str] = None
    language: str = "en"
    single_file: bool = False
    remove_watermarks: bool = True
    userscripts: List[str] = field(default_factory=list)
    sequence_mode: str = "none"
    disable_html5_audio: bool = False
    asset_policy: str = "best_effort"
    replace_existing: bool = False
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    http_handling: str = "redirect_to_https"
    proxy: Optional[str] = None
    extra_asset_hosts: Tuple[str, ...] = ()

    def __post_init__(self):
        if isinstance(self.concurrency_limit, bool) or not isinstance(self.concurrency_limit, int) \
                or self.concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be a positive integer, got {self.concurrency_limit!r}")
        if self.sequence_mode not in SEQUENCE_MODES:
            raise ValueError(f"sequence_mode must be one of {SEQUENCE_MODES}, got {self.sequence_mode!r}")
        if self.asset_policy not in ASSET_POLICIES:
            raise ValueError(f"asset_policy must be one of {ASSET_POLICIES}, got {self.asset_policy!r}")
        if self.http_handling not in HTTP_HANDLING_MODES:
            raise ValueError(f"http_handling must be one of {HTTP_HANDLING_MODES}, got {self.http_handling!r}")
        if self.connect_timeout <= 0 or self.read_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if not self.language:
            raise ValueError("language must not be empty")
        self.extra_asset_hosts = tuple(h.lower() for h in self.extra_asset_hosts)

    @property
    def version(self) -> str:
        return self.player_version or DEFAULT_PLAYER_VERSION

    @property
    def timeout(self) -> Tuple[float, float]:
        return (self.connect_timeout, self.read_timeout)

    @property
    def output_mode(self) -> str:
        return "single_file" if self.single_file else "directory"
