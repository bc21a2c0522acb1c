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


# download_errors.py
from typing import List, Optional


class AAOfflineError(Exception):
    """Base class for every error raised by the downloader."""


# --- Case resolution ---

class ResolutionError(AAOfflineError):
    """Unknown or malformed case, or a manifest that cannot be understood."""

    def __init__(self, message: str, case_input: Optional[str] = None):
        super().__init__(message)
        self.case_input = case_input


class NotFound(ResolutionError):
    pass


class ParseError(ResolutionError):
    pass


# --- Network ---

class NetworkError(AAOfflineError):
    """
    A failed network operation.
    `transient` errors (timeouts, resets, 5xx) are retried by the HTTP client,
    anything else is surfaced immediately.
    """

    def __init__(self, message: str, url: Optional[str] = None,
                 status_code: Optional[int] = None, transient: bool = False):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.transient = transient


class RunCancelled(AAOfflineError):
    pass


# --- Per-asset / per-case ---

class AssetError(AAOfflineError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class SequenceError(AAOfflineError):
    def __init__(self, message: str, source_id: Optional[int] = None, target_id: Optional[int] = None):
        super().__init__(message)
        self.source_id = source_id
        self.target_id = target_id


class BundleError(AAOfflineError):
    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = list(missing or [])
