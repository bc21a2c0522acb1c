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


# case_models.py
import base64
import copy
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from download_errors import AssetError

ASSETS_DIR = "assets"
INDEX_FILE_NAME = "index.html"

# Placeholder for an inlined asset until the bundler writes its payload
INLINE_HANDLE_PREFIX = "aao-asset:"

# --- Case manifest ---

@dataclass(frozen=True)
class SequenceEntry:
    case_id: int
    title: str


@dataclass(frozen=True)
class CaseManifest:
    """
    A resolved case. Built once by the resolver and never mutated afterwards:
    anything that needs to change the case data works on a deep copy.
    """
    case_id: int
    title: str
    author: str
    language: str
    trial_information: Dict[str, Any]
    trial_data: Dict[str, Any]
    sequence_title: Optional[str] = None
    sequence: Tuple[SequenceEntry, ...] = ()

    @property
    def sequence_ids(self) -> Tuple[int, ...]:
        return tuple(entry.case_id for entry in self.sequence)

    @property
    def next_case_ids(self) -> Tuple[int, ...]:
        ids = self.sequence_ids
        if self.case_id not in ids:
            return ()
        position = ids.index(self.case_id)
        return ids[position + 1:position + 2]


# --- Consuming documents ---

JSON_DOCUMENTS = ("trial_information", "trial_data", "default_places", "default_sprites", "default_voices",
                  "psyche_locks")
TEXT_DOCUMENTS = ("markup", "scripts")


@dataclass
class CaseDocuments:
    trial_information: Dict[str, Any]
    trial_data: Dict[str, Any]
    markup: str = ""
    scripts: str = ""
    default_places: Dict[str, Any] = field(default_factory=dict)
    default_sprites: Dict[str, str] = field(default_factory=dict)
    default_voices: Dict[str, str] = field(default_factory=dict)
    psyche_locks: Dict[str, str] = field(default_factory=dict)
    psyche_lock_count: int = 0

    def get(self, name: str) -> Any:
        if name not in JSON_DOCUMENTS and name not in TEXT_DOCUMENTS:
            raise KeyError(name)
        return getattr(self, name)

    def set(self, name: str, value: Any) -> None:
        if name not in JSON_DOCUMENTS and name not in TEXT_DOCUMENTS:
            raise KeyError(name)
        setattr(self, name, value)

    def copy(self) -> "CaseDocuments":
        return copy.deepcopy(self)


# --- Asset references ---

class AssetRole(str, Enum):
    SPRITE = "sprite"
    SOUND = "sound"
    MUSIC = "music"
    VOICE = "voice"
    BACKGROUND = "background"
    EVIDENCE = "evidence"
    ICON = "icon"
    POPUP = "popup"
    PSYCHE_LOCK = "psyche_lock"
    IMAGE = "image"
    FONT = "font"
    SCRIPT = "script"
    MARKUP = "markup"


SITE_POINTER = "pointer"
SITE_LITERAL = "literal"


@dataclass(frozen=True)
class OccurrenceSite:
    """
    Where a reference is cited.
    `pointer` sites hold a JSON pointer into a structured document; `flag` is an
    optional pointer to a boolean that must become true once the value is local.
    `literal` sites hold the raw text as it appears in a text document.
    """
    document: str
    location: str
    kind: str = SITE_POINTER
    flag: Optional[str] = None


@dataclass(eq=False)
class AssetReference:
    url: str
    role: AssetRole
    default_extension: Optional[str] = None
    sites: List[OccurrenceSite] = field(default_factory=list)

    def add_site(self, site: OccurrenceSite) -> None:
        if site not in self.sites:
            self.sites.append(site)

    def __eq__(self, other):
        return isinstance(other, AssetReference) and other.url == self.url

    def __hash__(self):
        return hash(self.url)


# --- Asset records ---

STATUS_PENDING = "pending"
STATUS_FETCHED = "fetched"
STATUS_FAILED = "failed"


@dataclass
class AssetRecord:
    reference: AssetReference
    local_name: str
    status: str = STATUS_PENDING
    content: bytes = b""
    content_type: Optional[str] = None
    error: Optional[AssetError] = None
    watermark_removed: bool = False

    @property
    def url(self) -> str:
        return self.reference.url

    @property
    def ok(self) -> bool:
        return self.status == STATUS_FETCHED

    @property
    def relative_path(self) -> str:
        return f"{ASSETS_DIR}/{self.local_name}"

    @property
    def data_uri(self) -> str:
        mime = self.content_type or "application/octet-stream"
        payload = base64.b64encode(self.content).decode("ascii") if self.ok else ""
        return f"data:{mime};base64,{payload}"

    @property
    def inline_key(self) -> str:
        return hashlib.sha1(self.url.encode("utf-8")).hexdigest()[:16]

    @property
    def inline_handle(self) -> str:
        return INLINE_HANDLE_PREFIX + self.inline_key

    def local_form(self, single_file: bool) -> str:
        """Relative path in directory output; in single-file output a handle the bundler inlines once."""
        return self.inline_handle if single_file else self.relative_path


# --- Run report ---

CASE_SUCCEEDED = "succeeded"
CASE_PARTIAL = "partial"
CASE_FAILED = "failed"
CASE_CANCELLED = "cancelled"

RUN_SUCCEEDED = "succeeded"
RUN_SUCCEEDED_WITH_WARNINGS = "succeeded_with_warnings"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"


@dataclass
class CaseResult:
    case_input: str
    case_id: Optional[int] = None
    title: Optional[str] = None
    status: str = CASE_FAILED
    output_path: Optional[str] = None
    missing_assets: List[AssetError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def missing_count(self) -> int:
        return len(self.missing_assets)

    @property
    def label(self) -> str:
        if self.case_id is None:
            return self.case_input
        return f"#{self.case_id} {self.title or ''}".strip()


@dataclass
class RunReport:
    cases: List[CaseResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> List[CaseResult]:
        return [c for c in self.cases if c.status == CASE_SUCCEEDED]

    @property
    def partial(self) -> List[CaseResult]:
        return [c for c in self.cases if c.status == CASE_PARTIAL]

    @property
    def failed(self) -> List[CaseResult]:
        return [c for c in self.cases if c.status in (CASE_FAILED, CASE_CANCELLED)]

    @property
    def asset_errors(self) -> List[AssetError]:
        return [err for c in self.cases for err in c.missing_assets]

    @property
    def status(self) -> str:
        if self.cancelled:
            return RUN_CANCELLED
        if not self.succeeded and not self.partial:
            return RUN_FAILED
        if self.partial or self.failed or any(c.warnings for c in self.cases):
            return RUN_SUCCEEDED_WITH_WARNINGS
        return RUN_SUCCEEDED

    def summary(self) -> str:
        lines = [f"Download finished. Cases: {len(self.cases)}, "
                 f"Succeeded: {len(self.succeeded)}, "
                 f"Partial: {len(self.partial)}, "
                 f"Failed: {len(self.failed)}"]
        if self.cancelled:
            lines[0] = "Download cancelled. " + lines[0]
        for case in self.succeeded:
            lines.append(f"[ok] {case.label} -> {case.output_path}")
        for case in self.partial:
            lines.append(f"[partial] {case.label} -> {case.output_path} "
                         f"({case.missing_count} missing asset(s))")
            for err in sorted(case.missing_assets, key=lambda e: e.url):
                lines.append(f"- {err.url}\n  ({err.reason})")
        for case in self.failed:
            lines.append(f"[{case.status}] {case.label}: {case.error or 'unknown error'}")
            for err in sorted(case.missing_assets, key=lambda e: e.url):
                lines.append(f"- {err.url}\n  ({err.reason})")
        return "\n".join(lines)
