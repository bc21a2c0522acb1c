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


# case_bundler.py
import html
import json
import logging
import os
import posixpath
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from case_models import (
    ASSETS_DIR, INDEX_FILE_NAME, INLINE_HANDLE_PREFIX, AssetRecord, CaseDocuments, CaseManifest,
)
from case_rewriter import MODE_DIRECTORY, MODE_SINGLE_FILE, OUTPUT_MODES, PHP_BLOCK_REGEX
from download_config import ASSET_POLICIES
from download_errors import BundleError, RunCancelled
from player_template import DEFAULT_PLACES_REGEX
from url_utils import sanitize_filename_component

logger = logging.getLogger(__name__)

VOICE_REGEX = re.compile(r"(?s)function getVoiceUrl\(voice_id,\s*ext\)\s*\{(.*?)\}")
DEFAULT_SPRITES_REGEX = re.compile(r"(?s)getDefaultSpriteUrl\(base, sprite_id, status\)\s*\{(.*?)\}")
PSYCHE_LOCK_REGEX = re.compile(
    r"""cfg\.picture_dir\s*\+\s*cfg\.locks_subdir\s*\+\s*(?P<quote>["'])(?P<name>\w+)\.gif\?id=(?P=quote)"""
    r"""\s*\+\s*(?P<id>[\w.$]+(?:\[[\w.$]+\])?)"""
)
PRELOAD_PLACES_REGEX = re.compile(r"preloadPlaceImages\(default_places\[i\], img_container\)")
HTML_END = "</html>"

INLINE_KEY = re.escape(INLINE_HANDLE_PREFIX) + r"(?P<key>[0-9a-f]{16})"
CSS_HANDLE_REGEX = re.compile(r"""url\(\s*(?P<quote>["']?)""" + INLINE_KEY + r"""(?P=quote)\s*\)""")
ATTRIBUTE_HANDLE_REGEX = re.compile(r"""\b(?P<attr>src|href|poster)=(?P<quote>["'])""" + INLINE_KEY + r"(?P=quote)")
SCRIPT_HANDLE_REGEX = re.compile(r"""(?P<quote>["'])""" + INLINE_KEY + r"(?P=quote)")
BARE_HANDLE_REGEX = re.compile(INLINE_KEY)
FIRST_SCRIPT_REGEX = re.compile(r"<script\b", re.IGNORECASE)

ASSET_TABLE = "aao_assets"
# Fills stylesheet variables and markup attributes from the asset table
ASSET_LOADER = """(function() {
\tvar root = document.documentElement;
\taao_css_assets.forEach(function(key) {
\t\troot.style.setProperty('--aao-asset-' + key, 'url("' + aao_assets[key] + '")');
\t});
\tdocument.addEventListener('DOMContentLoaded', function() {
\t\t['src', 'href', 'poster'].forEach(function(attr) {
\t\t\tdocument.querySelectorAll('[data-aao-asset-' + attr + ']').forEach(function(element) {
\t\t\t\telement.setAttribute(attr, aao_assets[element.getAttribute('data-aao-asset-' + attr)]);
\t\t\t});
\t\t});
\t});
})();
"""


def to_js_json(value: Any) -> str:
    """JSON safe to embed inside a <script> element."""
    return json.dumps(value, ensure_ascii=False).replace("</", "<\\/")


# --- PHP blocks ---

@dataclass(frozen=True)
class PhpBlockRule:
    name: str
    detector: re.Pattern
    replacement: Callable[[], str]


def substitute_php_blocks(text: str, rules: Sequence[PhpBlockRule], where: str) -> str:
    """
    Replaces every <?php ?> block with the output of the rule that detects it.
    Blocks no rule knows are removed.
    """
    def _replace(match: re.Match) -> str:
        code = match.group(1)
        hits = [rule for rule in rules if rule.detector.search(code)]
        if len(hits) > 1:
            raise BundleError(f"Ambiguous PHP block in {where}: matched {[r.name for r in hits]}")
        if not hits:
            logger.warning("Removing unknown PHP block from %s: %s", where, code.strip()[:80])
            return ""
        return hits[0].replacement()

    return PHP_BLOCK_REGEX.sub(_replace, text)


def serialize_case(documents: CaseDocuments) -> str:
    return (f"var trial_information = {to_js_json(documents.trial_information)};\n"
            f"var initial_trial_data = {to_js_json(documents.trial_data)};\n")


def write_default_tables(scripts: str, documents: CaseDocuments) -> str:
    if DEFAULT_PLACES_REGEX.search(scripts):
        scripts = DEFAULT_PLACES_REGEX.sub(
            lambda _: f"var default_places = {to_js_json(documents.default_places)};", scripts, count=1)
    else:
        logger.warning("Could not find default places in player scripts, skipping.")

    voice = VOICE_REGEX.search(scripts)
    if voice:
        lines = []
        for key, url in sorted(documents.default_voices.items()):
            number, ext = key.split(".", 1)
            lines.append(f"if (-voice_id === {int(number)} && ext === {to_js_json(ext)}) return {to_js_json(url)};\n")
        lines.append("return '';")
        scripts = scripts[:voice.start(1)] + "".join(lines) + scripts[voice.end(1):]
    else:
        logger.warning("Could not find getVoiceUrl in player scripts, skipping.")

    sprites = DEFAULT_SPRITES_REGEX.search(scripts)
    if sprites:
        lines = []
        for key, url in sorted(documents.default_sprites.items()):
            base, number, status = key.rsplit("/", 2)
            lines.append(f"if (base === {to_js_json(base)} && sprite_id === {int(number)} && "
                         f"status === {to_js_json(status)}) return {to_js_json(url)};\n")
        lines.append("return '';")
        scripts = scripts[:sprites.start(1)] + "".join(lines) + scripts[sprites.end(1):]
    else:
        logger.warning("Could not find getDefaultSpriteUrl in player scripts, skipping.")
    return scripts


def psyche_lock_copy(local: str, number: int) -> str:
    stem, ext = posixpath.splitext(local)
    return f"{stem}_{number}{ext}"


def write_psyche_locks(scripts: str, documents: CaseDocuments) -> str:
    """
    The player tells locks apart by an ?id= query, which local files cannot carry.
    Directory output gets one numbered copy per lock; single-file output puts the
    id into the MIME type of the shared data: URI.
    """
    if not documents.psyche_locks:
        return scripts

    def _replace(match: re.Match) -> str:
        local = documents.psyche_locks.get(match.group("name"))
        if local is None:
            return match.group(0)
        lock_id = match.group("id")
        if local.startswith(INLINE_HANDLE_PREFIX):
            return f"{to_js_json(local)}.replace(';', {lock_id} + ';')"
        stem, ext = posixpath.splitext(local)
        return f"{to_js_json(stem + '_')} + {lock_id} + {to_js_json(ext)}"

    scripts, count = PSYCHE_LOCK_REGEX.subn(_replace, scripts)
    if not count:
        logger.warning("Could not find psyche locks in player scripts, skipping.")
    return scripts


def disable_place_preloading(scripts: str) -> str:
    """Default places are already local; preloading them all would request the unused ones."""
    scripts, count = PRELOAD_PLACES_REGEX.subn("return", scripts, count=1)
    if not count:
        logger.warning("Could not find default place preloading in player scripts, skipping.")
    return scripts


def inline_assets(document: str, records: Iterable[AssetRecord]) -> str:
    """
    Resolves the inline handles of a single-file document. Each payload is
    written once, into a table ahead of the first script: scripts read the table
    directly, stylesheets and markup attributes are filled in from it on load.
    """
    by_key = {record.inline_key: record for record in records}
    shared: Dict[str, AssetRecord] = {}
    css_keys: List[str] = []

    def _share(key: str) -> str:
        record = by_key.get(key)
        if record is None:
            raise BundleError(f"Inline handle {INLINE_HANDLE_PREFIX}{key} has no asset record")
        shared[key] = record
        return key

    def _css(match: re.Match) -> str:
        key = _share(match.group("key"))
        if key not in css_keys:
            css_keys.append(key)
        return f"var(--aao-asset-{key})"

    def _attribute(match: re.Match) -> str:
        key = _share(match.group("key"))
        return f'{match.group("attr")}="" data-aao-asset-{match.group("attr")}="{key}"'

    def _script(match: re.Match) -> str:
        return f"{ASSET_TABLE}[{to_js_json(_share(match.group('key')))}]"

    def _bare(match: re.Match) -> str:
        record = by_key.get(match.group("key"))
        if record is None:
            raise BundleError(f"Inline handle {match.group(0)} has no asset record")
        logger.warning("Inlining %s in place, its context cannot read the asset table", record.url)
        return record.data_uri

    document = CSS_HANDLE_REGEX.sub(_css, document)
    document = ATTRIBUTE_HANDLE_REGEX.sub(_attribute, document)
    document = SCRIPT_HANDLE_REGEX.sub(_script, document)
    document = BARE_HANDLE_REGEX.sub(_bare, document)
    if not shared:
        return document

    entries = ",\n".join(f"{to_js_json(key)}: {to_js_json(record.data_uri)}" for key, record in sorted(shared.items()))
    table = (f"<script type=\"text/javascript\">\nvar {ASSET_TABLE} = {{\n{entries}\n}};\n"
             f"var aao_css_assets = {to_js_json(css_keys)};\n{ASSET_LOADER}</script>\n")
    first_script = FIRST_SCRIPT_REGEX.search(document)
    if first_script:
        return document[:first_script.start()] + table + document[first_script.start():]
    position = document.find("</head>")
    if position == -1:
        return table + document
    return document[:position] + table + document[position:]


def append_userscripts(markup: str, userscripts: Sequence[str]) -> str:
    if not userscripts:
        return markup
    block = "<script type=\"text/javascript\">" + "\n\n".join(userscripts) + "</script>\n"
    position = markup.rfind(HTML_END)
    if position == -1:
        return markup + block
    return markup[:position] + block + markup[position:]


def render_player(manifest: CaseManifest, documents: CaseDocuments, language: str,
                  userscripts: Sequence[str] = ()) -> str:
    """Builds the final player document of a case from its rewritten documents."""
    title = html.escape(manifest.title)
    scripts = substitute_php_blocks(documents.scripts, [
        PhpBlockRule("common_render", re.compile(r"include\('common_render\.php'\);"), lambda: ""),
        PhpBlockRule("trial_data", re.compile(r"var trial_information;"), lambda: serialize_case(documents)),
    ], "player scripts")
    scripts = write_default_tables(scripts, documents)
    scripts = write_psyche_locks(scripts, documents)
    scripts = disable_place_preloading(scripts)

    markup = substitute_php_blocks(documents.markup, [
        PhpBlockRule("common_render", re.compile(r"include\('common_render\.php'\);"), lambda: ""),
        PhpBlockRule("language", re.compile(r"echo language_backend\(.*\)"), lambda: language),
        PhpBlockRule("scripts", re.compile(r"include\('bridge\.js\.php'\);"), lambda: scripts),
        PhpBlockRule("title", re.compile(r"echo 'Ace Attorney Online - Trial Player \(Loading\)';"), lambda: title),
        PhpBlockRule("heading", re.compile(r"echo 'Loading trial \.\.\.';"), lambda: title),
    ], "player markup")
    return append_userscripts(markup, userscripts)


# --- Output naming ---

def output_names(manifests: Iterable[CaseManifest]) -> Dict[int, str]:
    """Sanitized, batch-unique output names; duplicate titles get the case id appended."""
    ordered = sorted(manifests, key=lambda m: m.case_id)
    base_names = {m.case_id: sanitize_filename_component(m.title) or f"case_{m.case_id}" for m in ordered}
    counts: Dict[str, int] = {}
    for name in base_names.values():
        counts[name.lower()] = counts.get(name.lower(), 0) + 1
    return {case_id: (name if counts[name.lower()] == 1 else f"{name}_{case_id}")
            for case_id, name in base_names.items()}


def index_location(name: str, mode: str) -> str:
    return f"{name}.html" if mode == MODE_SINGLE_FILE else f"{name}/{INDEX_FILE_NAME}"


# --- Output ---

@dataclass
class BundleOutput:
    mode: str
    target: Path
    document: str
    assets: Dict[str, AssetRecord] = field(default_factory=dict)
    missing: List[AssetRecord] = field(default_factory=list)
    replace_existing: bool = False
    written: bool = False

    @property
    def index_path(self) -> Path:
        return self.target / INDEX_FILE_NAME if self.mode == MODE_DIRECTORY else self.target

    def write(self, cancelled: Optional[Callable[[], bool]] = None) -> Path:
        """Writes the whole output at once; a failed or cancelled write leaves nothing behind."""
        if self.written:
            raise BundleError(f"Output {self.target} was already written")
        if self.target.exists() and not self.replace_existing:
            raise BundleError(f"Output already exists: {self.target}")
        try:
            self.target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e_dir:
            raise BundleError(f"Could not create {self.target.parent}: {e_dir}") from e_dir

        if self.mode == MODE_DIRECTORY:
            self._write_directory(cancelled)
        else:
            self._write_single_file(cancelled)
        self.written = True
        logger.info("Wrote %s", self.index_path)
        return self.index_path

    def _write_directory(self, cancelled: Optional[Callable[[], bool]]) -> None:
        staging = Path(tempfile.mkdtemp(prefix=f".{self.target.name}.", suffix=".partial", dir=self.target.parent))
        try:
            (staging / INDEX_FILE_NAME).write_text(self.document, encoding="utf-8")
            (staging / ASSETS_DIR).mkdir()
            for relative_path, record in sorted(self.assets.items()):
                (staging / relative_path).write_bytes(record.content)
            if cancelled and cancelled():
                raise RunCancelled(f"Cancelled before {self.target} was complete")
            if self.target.exists():
                shutil.rmtree(self.target)
            os.replace(staging, self.target)
        except OSError as e_write:
            shutil.rmtree(staging, ignore_errors=True)
            raise BundleError(f"Could not write {self.target}: {e_write}") from e_write
        except RunCancelled:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    def _write_single_file(self, cancelled: Optional[Callable[[], bool]]) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{self.target.name}.", suffix=".partial", dir=self.target.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self.document)
            if cancelled and cancelled():
                raise RunCancelled(f"Cancelled before {self.target} was complete")
            os.replace(temp_name, self.target)
        except OSError as e_write:
            Path(temp_name).unlink(missing_ok=True)
            raise BundleError(f"Could not write {self.target}: {e_write}") from e_write
        except RunCancelled:
            Path(temp_name).unlink(missing_ok=True)
            raise


class Bundler:
    def __init__(self, output_root: Path, mode: str = MODE_DIRECTORY, asset_policy: str = "best_effort",
                 language: str = "en", userscripts: Sequence[str] = (), replace_existing: bool = False):
        if mode not in OUTPUT_MODES:
            raise ValueError(f"Unknown output mode: {mode!r}")
        if asset_policy not in ASSET_POLICIES:
            raise ValueError(f"Unknown asset policy: {asset_policy!r}")
        self.output_root = Path(output_root)
        self.mode = mode
        self.asset_policy = asset_policy
        self.language = language
        self.userscripts = list(userscripts)
        self.replace_existing = replace_existing

    def build(self, manifest: CaseManifest, documents: CaseDocuments, records: Iterable[AssetRecord],
              name: str) -> BundleOutput:
        records = list(records)
        missing = sorted((r for r in records if not r.ok), key=lambda r: r.url)
        if missing:
            listing = ", ".join(r.url for r in missing)
            if self.asset_policy == "fail_fast":
                raise BundleError(f"Case {manifest.case_id}: {len(missing)} asset(s) missing: {listing}",
                                  [r.url for r in missing])
            logger.warning("Case %d: bundling without %d missing asset(s): %s", manifest.case_id, len(missing), listing)

        document = render_player(manifest, documents, self.language, self.userscripts)
        if self.mode == MODE_SINGLE_FILE:
            return BundleOutput(self.mode, self.output_root / f"{name}.html", inline_assets(document, records),
                                missing=missing, replace_existing=self.replace_existing)
        assets = {r.relative_path: r for r in records if r.ok}
        for local in documents.psyche_locks.values():
            record = assets.get(local)
            if record is None:
                continue
            for number in range(1, documents.psyche_lock_count + 1):
                assets[psyche_lock_copy(local, number)] = record
        return BundleOutput(self.mode, self.output_root / name, document, assets,
                            missing=missing, replace_existing=self.replace_existing)
