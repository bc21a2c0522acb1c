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


# asset_graph.py
import copy
import logging
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from bs4 import BeautifulSoup

from case_models import (
    SITE_LITERAL, SITE_POINTER, AssetReference, AssetRole, CaseDocuments, CaseManifest, OccurrenceSite,
)
from player_template import CSS_URL_REGEX, PlayerTemplate
from url_utils import (
    AUDIO_EXTENSIONS, FONT_EXTENSIONS, IMAGE_EXTENSIONS, SCRIPT_EXTENSIONS,
    canonicalize_url, is_allowed_asset_url, url_extension,
)

logger = logging.getLogger(__name__)

SRC_REGEX = re.compile(r"""(?:src=["']([^"']+)["']|\.src\s*=\s*['"]([^'"]*?)['"])""")
QUOTED_URL_REGEX = re.compile(r"""["'](https?://[^"'\s<>]+)["']""")

# Markup elements whose attribute may point at an asset
TAG_ATTRIBUTES = {
    'img': 'src', 'audio': 'src', 'video': 'src', 'source': 'src',
    'embed': 'src', 'script': 'src', 'input': 'src', 'link': 'href',
}

SPRITE_KINDS = ("talking", "still", "startup")
VOICE_EXTENSIONS = ("opus", "wav", "mp3")
VOICE_COUNT = 3
# Profile id 0 is the judge, who has no entry in the case profiles
JUDGE_PROFILE_ID = 0
JUDGE_BASE = "Juge"

# Psyche lock animations, fetched once and shown once per lock
LOCK_NAMES = ("fg_chains_appear", "jfa_lock_appears", "jfa_lock_explodes", "fg_chains_disappear")

UNSAFE_LITERAL_CHARS = set("'\"<>{}\n\r\t")


def pointer(*tokens: Any) -> str:
    """JSON pointer (RFC 6901) built from path tokens."""
    return "".join("/" + str(t).replace("~", "~0").replace("/", "~1") for t in tokens)


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return False


def object_items(container: Any, key: Any) -> Iterator[Tuple[int, Dict[str, Any]]]:
    """Indexed dict entries of container[key]. Case arrays start with a placeholder 0, which is skipped."""
    values = container.get(key) if isinstance(container, dict) else None
    if not isinstance(values, list):
        return
    for index, value in enumerate(values):
        if isinstance(value, dict):
            yield index, value


def role_for_url(url: str) -> AssetRole:
    ext = url_extension(url)
    if ext in AUDIO_EXTENSIONS:
        return AssetRole.SOUND
    if ext in FONT_EXTENSIONS:
        return AssetRole.FONT
    if ext in SCRIPT_EXTENSIONS:
        return AssetRole.SCRIPT
    if ext in IMAGE_EXTENSIONS:
        return AssetRole.IMAGE
    return AssetRole.MARKUP


def initial_documents(manifest: CaseManifest, template: PlayerTemplate) -> CaseDocuments:
    return CaseDocuments(
        trial_information=copy.deepcopy(manifest.trial_information),
        trial_data=copy.deepcopy(manifest.trial_data),
        markup=template.markup,
        scripts=template.scripts,
        default_places=copy.deepcopy(template.default_places),
    )


class AssetGraph:
    """
    Enumerates every asset a case references, deduplicated by canonical URL.

    After `enumerate`, `documents` holds the consuming documents the occurrence
    sites point into (a fresh copy of the case data, the default tables and the
    template text).
    """

    def __init__(self, template: PlayerTemplate, extra_hosts: Iterable[str] = ()):
        self.template = template
        self.extra_hosts = tuple(extra_hosts)
        self.documents: Optional[CaseDocuments] = None
        self.discarded: Set[str] = set()
        self._references: Dict[str, AssetReference] = {}

    @property
    def references(self) -> List[AssetReference]:
        return sorted(self._references.values(), key=lambda r: r.url)

    def enumerate(self, manifest: CaseManifest) -> Set[AssetReference]:
        self._references = {}
        self.discarded = set()
        self.documents = initial_documents(manifest, self.template)
        data = self.documents.trial_data

        self._collect_profiles(data)
        self._collect_default_sprites(data)
        self._collect_evidence(data)
        self._collect_places(data)
        self._collect_media(data, "popups", "path", AssetRole.POPUP, self.template.popup_dir(), "gif")
        self._collect_media(data, "music", "path", AssetRole.MUSIC, self.template.music_dir(), "mp3")
        self._collect_media(data, "sounds", "path", AssetRole.SOUND, self.template.sound_dir(), "mp3")
        self._collect_voices()
        self._collect_psyche_locks(data)

        self._scan_markup(self.documents.markup)
        self._scan_text("scripts", self.documents.scripts)

        if self.discarded:
            logger.debug("Case %d: discarded %d URL-like string(s) outside the allow-list",
                         manifest.case_id, len(self.discarded))
        logger.info("Case %d: %d unique asset(s) from %d occurrence(s)", manifest.case_id,
                    len(self._references), sum(len(r.sites) for r in self._references.values()))
        return set(self._references.values())

    # --- Registration ---

    def _add(self, url: str, role: AssetRole, site: OccurrenceSite, default_extension: Optional[str] = None) -> None:
        reference = self._references.get(url)
        if reference is None:
            reference = AssetReference(url, role, default_extension)
            self._references[url] = reference
        elif reference.default_extension is None and default_extension:
            reference.default_extension = default_extension
        reference.add_site(site)

    def site_url(self, dirs: List[str], filename: str, default_extension: Optional[str] = None) -> Optional[str]:
        if default_extension and not filename.lower().endswith("." + default_extension):
            filename = f"{filename}.{default_extension}"
        path = "/".join(part.strip("/") for part in dirs + [filename] if part)
        return canonicalize_url(path, base=self.template.base_url)

    def _resolve(self, value: Any, external: bool, dirs: Optional[List[str]],
                 default_extension: Optional[str]) -> Optional[str]:
        if not isinstance(value, str) or not value.strip():
            return None
        value = value.strip()
        if value.startswith("data:"):
            return None
        if external or dirs is None:
            return canonicalize_url(value, base=self.template.base_url)
        return self.site_url(dirs, value, default_extension)

    def _add_value(self, document: str, location: str, value: Any, role: AssetRole, external: bool = True,
                   dirs: Optional[List[str]] = None, default_extension: Optional[str] = None,
                   flag: Optional[str] = None) -> None:
        url = self._resolve(value, external, dirs, default_extension)
        if url is None:
            return
        self._add(url, role, OccurrenceSite(document, location, SITE_POINTER, flag), default_extension)

    def _add_literal(self, document: str, raw: str, base: Optional[str] = None) -> None:
        if not raw or raw.strip() != raw or UNSAFE_LITERAL_CHARS & set(raw) or raw.startswith("data:"):
            return
        url = canonicalize_url(raw, base=base or self.template.base_url)
        if url is None or not is_allowed_asset_url(url, self.extra_hosts):
            self.discarded.add(raw)
            return
        self._add(url, role_for_url(url), OccurrenceSite(document, raw, SITE_LITERAL))

    # --- Structured case data ---

    def _collect_profiles(self, data: Dict[str, Any]) -> None:
        for i, profile in object_items(data, "profiles"):
            if not profile.get("icon") and profile.get("base"):
                profile["icon"] = self.site_url(self.template.icon_dir(), str(profile["base"]), "png")
            self._add_value("trial_data", pointer("profiles", i, "icon"), profile.get("icon"),
                            AssetRole.ICON, default_extension="png")
            for j, sprite in object_items(profile, "custom_sprites"):
                for kind in SPRITE_KINDS:
                    self._add_value("trial_data", pointer("profiles", i, "custom_sprites", j, kind),
                                    sprite.get(kind), AssetRole.SPRITE)

    def used_default_sprites(self, data: Dict[str, Any]) -> Set[Tuple[str, int]]:
        bases = {JUDGE_PROFILE_ID: JUDGE_BASE}
        for _, profile in object_items(data, "profiles"):
            if profile.get("id") is not None and profile.get("base"):
                bases[profile["id"]] = str(profile["base"])
        used = set()
        for _, frame in object_items(data, "frames"):
            for _, character in object_items(frame, "characters"):
                profile_id, sprite_id = character.get("profile_id"), character.get("sprite_id")
                if not isinstance(sprite_id, int) or isinstance(sprite_id, bool) or sprite_id >= 0:
                    continue
                base = bases.get(profile_id)
                if base:
                    used.add((base, -sprite_id))
        return used

    def _collect_default_sprites(self, data: Dict[str, Any]) -> None:
        for base, number in sorted(self.used_default_sprites(data)):
            for kind in SPRITE_KINDS:
                if kind == "startup" and f"{base}/{number}" not in self.template.default_profiles_startup:
                    continue
                key = f"{base}/{number}/{kind}"
                url = self.site_url(self.template.sprite_dir(kind, base), str(number), "gif")
                self.documents.default_sprites[key] = url
                self._add(url, AssetRole.SPRITE, OccurrenceSite("default_sprites", pointer(key)), "gif")

    def _collect_evidence(self, data: Dict[str, Any]) -> None:
        for i, evidence in object_items(data, "evidence"):
            self._add_value("trial_data", pointer("evidence", i, "icon"), evidence.get("icon"),
                            AssetRole.EVIDENCE, as_bool(evidence.get("icon_external")),
                            self.template.evidence_dir(), "png", flag=pointer("evidence", i, "icon_external"))
            for j, page in object_items(evidence, "check_button_data"):
                if page.get("type") == "text":
                    continue
                self._add_value("trial_data", pointer("evidence", i, "check_button_data", j, "content"),
                                page.get("content"), AssetRole.EVIDENCE)

    def _collect_places(self, data: Dict[str, Any]) -> None:
        self._walk_places("trial_data", ("places",), object_items(data, "places"))
        used = set()
        for _, frame in object_items(data, "frames"):
            if isinstance(frame.get("place"), int):
                used.add(str(frame["place"]))
        default_places = self.documents.default_places
        self._walk_places("default_places", (), (
            (key, place) for key, place in sorted(default_places.items())
            if key in used and isinstance(place, dict)
        ))

    def _walk_places(self, document: str, prefix: Tuple[Any, ...], places: Iterable[Tuple[Any, Dict[str, Any]]]) -> None:
        for key, place in places:
            background = place.get("background")
            if isinstance(background, dict) and "image" in background:
                self._add_value(document, pointer(*prefix, key, "background", "image"), background.get("image"),
                                AssetRole.BACKGROUND, as_bool(background.get("external")),
                                self.template.background_dir(), "jpg",
                                flag=pointer(*prefix, key, "background", "external"))
            for objects_key in ("background_objects", "foreground_objects"):
                for j, obj in object_items(place, objects_key):
                    if not as_bool(obj.get("external")):
                        logger.warning("Skipping non-external place object %s", pointer(*prefix, key, objects_key, j))
                        continue
                    self._add_value(document, pointer(*prefix, key, objects_key, j, "image"), obj.get("image"),
                                    AssetRole.BACKGROUND)

    def _collect_media(self, data: Dict[str, Any], key: str, field_name: str, role: AssetRole,
                       dirs: List[str], default_extension: str) -> None:
        for i, item in object_items(data, key):
            self._add_value("trial_data", pointer(key, i, field_name), item.get(field_name), role,
                            as_bool(item.get("external")), dirs, default_extension,
                            flag=pointer(key, i, "external"))

    def _collect_voices(self) -> None:
        for number in range(1, VOICE_COUNT + 1):
            for ext in VOICE_EXTENSIONS:
                key = f"{number}.{ext}"
                url = self.site_url(self.template.voice_dir(), f"voice_singleblip_{number}.{ext}")
                self.documents.default_voices[key] = url
                self._add(url, AssetRole.VOICE, OccurrenceSite("default_voices", pointer(key)), ext)

    @staticmethod
    def max_psyche_locks(data: Dict[str, Any]) -> int:
        """Largest number of locks any dialogue shows at once."""
        most = 0
        for _, scene in object_items(data, "scenes"):
            for _, dialogue in object_items(scene, "dialogues"):
                locks = dialogue.get("locks")
                if isinstance(locks, dict) and isinstance(locks.get("locks_to_display"), list):
                    most = max(most, len(locks["locks_to_display"]))
        return most

    def _collect_psyche_locks(self, data: Dict[str, Any]) -> None:
        count = self.max_psyche_locks(data)
        if not count:
            return
        self.documents.psyche_lock_count = count
        for name in LOCK_NAMES:
            url = self.site_url(self.template.lock_dir(), name, "gif")
            self.documents.psyche_locks[name] = url
            self._add(url, AssetRole.PSYCHE_LOCK, OccurrenceSite("psyche_locks", pointer(name)), "gif")

    # --- Template text ---

    def _scan_markup(self, markup: str) -> None:
        soup = BeautifulSoup(markup, 'html.parser')
        for tag_name, attr_name in TAG_ATTRIBUTES.items():
            for tag in soup.find_all(tag_name):
                value = tag.get(attr_name)
                if isinstance(value, list):
                    value = value[0] if value else None
                if value:
                    self._add_literal("markup", value)
        for style_tag in soup.find_all('style'):
            if style_tag.string:
                self._scan_css("markup", style_tag.string)
        for styled in soup.find_all(style=True):
            self._scan_css("markup", styled['style'])
        for script_tag in soup.find_all('script'):
            if script_tag.string:
                self._scan_text("markup", script_tag.string)

    def _scan_css(self, document: str, css: str) -> None:
        for match in CSS_URL_REGEX.finditer(css):
            self._add_literal(document, match.group(2))

    def _scan_text(self, document: str, text: str) -> None:
        for match in SRC_REGEX.finditer(text):
            self._add_literal(document, match.group(1) or match.group(2))
        for match in QUOTED_URL_REGEX.finditer(text):
            self._add_literal(document, match.group(1))
        self._scan_css(document, text)
