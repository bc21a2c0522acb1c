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


# player_template.py
import json
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from download_config import DEFAULT_PLAYER_VERSION
from download_errors import NetworkError, ParseError
from http_client import HttpClient
from url_utils import AAONLINE_BASE, engine_file_url

logger = logging.getLogger(__name__)

# --- Source patterns ---

CONFIG_REGEX = re.compile(r"(?s)var cfg = (\{.*?\});")
DEFAULT_PROFILES_STARTUP_REGEX = re.compile(r'(?s)var default_profiles_startup = JSON\.parse\("(.*?)"\);')
DEFAULT_PLACES_REGEX = re.compile(r"(?s)var default_places = (\{.*?\});")
MODULE_REGEX = re.compile(
    r"""(?sm)Modules\.load\(new Object\(\{\s*name\s*:\s*['"](.*?)['"]\s*,\s*dependencies\s*:\s*(\[.*?\]),"""
    r"""\s*init\s*:\s*function\(\)\s*\{(.*?)\}\s*^\}\)\);"""
)
STYLE_INCLUDE_REGEX = re.compile(r"""includeStyle\(['"](.*?)['"]\);""")
LANGUAGE_INCLUDE_REGEX = re.compile(r"(?s)Languages\.requestFiles\(\[([^\]]*)\], function\(\)\{\s*(.*?)\s*\}\);")
LANGUAGE_REGEX = re.compile(r"var lang = new Object\(\);")
HOWLER_REGEX = re.compile(r"includeScript\('howler\.js/howler\.min', false, '', function\(\)\{([^}]*?)\}\);")
ANALYTICS_REGEX = re.compile(r"(?s)<script>.*?UA-.*?</script>")
CSS_URL_REGEX = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)

PSEUDO_MODULES = {"dom_loaded", "page_loaded"}
ENTRY_MODULE = "player"

SITE_BASE = AAONLINE_BASE + "/"
PLAYER_PAGE_URL = AAONLINE_BASE + "/player.php"

SPRITE_SUBDIRS = {"talking": "talking_subdir", "still": "still_subdir", "startup": "startup_subdir"}


def decode_js_json(escaped: str) -> Any:
    """Decodes the JSON text inside a JavaScript `JSON.parse("...")` string literal."""
    # \' is valid in JavaScript strings but not in JSON ones
    unquoted = re.sub(r"(?<!\\)((?:\\\\)*)\\'", r"\1'", escaped)
    try:
        return json.loads(json.loads('"' + unquoted + '"'))
    except json.JSONDecodeError as e_json:
        raise ParseError(f"Embedded JSON could not be decoded: {e_json}") from e_json


def merge_json(target: Any, update: Any) -> Any:
    if isinstance(target, dict) and isinstance(update, dict):
        for key, value in update.items():
            target[key] = merge_json(target.get(key), value)
        return target
    return update


@dataclass(frozen=True)
class JsModule:
    name: str
    dependencies: FrozenSet[str]
    init: str
    content: str


@dataclass(frozen=True)
class PlayerTemplate:
    """The player engine of one version, shared by every case that uses it."""
    version: str
    markup: str
    scripts: str
    site_paths: Dict[str, str]
    default_places: Dict[str, Any] = field(default_factory=dict)
    default_profiles_startup: FrozenSet[str] = frozenset()
    base_url: str = SITE_BASE

    def site_dir(self, *keys: str) -> List[str]:
        return [self.site_paths.get(key, "") for key in keys]

    def sprite_dir(self, kind: str, base: str) -> List[str]:
        return self.site_dir("picture_dir", SPRITE_SUBDIRS[kind]) + [base]

    def icon_dir(self) -> List[str]:
        return self.site_dir("picture_dir", "icon_subdir")

    def evidence_dir(self) -> List[str]:
        return self.site_dir("picture_dir", "evidence_subdir")

    def background_dir(self) -> List[str]:
        return self.site_dir("picture_dir", "bg_subdir")

    def lock_dir(self) -> List[str]:
        return self.site_dir("picture_dir", "locks_subdir")

    def popup_dir(self) -> List[str]:
        return self.site_dir("picture_dir", "popups_subdir")

    def music_dir(self) -> List[str]:
        return self.site_dir("music_dir")

    def sound_dir(self) -> List[str]:
        return self.site_dir("sounds_dir")

    def voice_dir(self) -> List[str]:
        return self.site_dir("voices_dir")


# --- Building a template ---

class TemplateBuilder:
    def __init__(self, client: HttpClient, language: str = "en", max_workers: int = 5):
        self.client = client
        self.language = language
        self.max_workers = max_workers

    def _get_text(self, url: str) -> str:
        return self.client.get_text(url, referer=PLAYER_PAGE_URL)

    # Site data

    def fetch_site_paths(self) -> Dict[str, str]:
        bridge = self._get_text(f"{AAONLINE_BASE}/bridge.js.php")
        match = CONFIG_REGEX.search(bridge)
        if not match:
            raise ParseError("Site configuration not found in bridge.js.php")
        try:
            paths = json.loads(match.group(1))
        except json.JSONDecodeError as e_json:
            raise ParseError(f"Site configuration is not valid JSON: {e_json}") from e_json
        return {key: str(value).strip('/') for key, value in paths.items() if isinstance(value, str)}

    @staticmethod
    def parse_default_data(module_text: str) -> Tuple[Dict[str, Any], FrozenSet[str]]:
        startup_match = DEFAULT_PROFILES_STARTUP_REGEX.search(module_text)
        places_match = DEFAULT_PLACES_REGEX.search(module_text)
        if not startup_match or not places_match:
            raise ParseError("Default data module changed format")
        startup = decode_js_json(startup_match.group(1))
        try:
            places = json.loads(places_match.group(1))
        except json.JSONDecodeError as e_json:
            raise ParseError(f"Default places are not valid JSON: {e_json}") from e_json
        if not isinstance(startup, dict) or not isinstance(places, dict):
            raise ParseError("Default data has an unexpected shape")
        return places, frozenset(startup.keys())

    # Modules

    def module_url(self, name: str, version: str) -> str:
        if name == "default_data":
            # Rendered by the site, the repository only has the PHP source
            return f"{AAONLINE_BASE}/default_data.js.php"
        if name == "trial":
            return engine_file_url(version, "trial.js.php")
        return engine_file_url(version, f"Javascript/{name}.js")

    def fetch_module(self, name: str, version: str) -> JsModule:
        text = self._get_text(self.module_url(name, version))
        match = MODULE_REGEX.search(text)
        if not match:
            raise ParseError(f"Player module '{name}' changed format")
        if match.group(1) != name:
            raise ParseError(f"Module file '{name}' declares module '{match.group(1)}'")
        try:
            dependencies = json.loads(match.group(2).replace("'", '"'))
        except json.JSONDecodeError as e_json:
            raise ParseError(f"Dependencies of module '{name}' could not be read: {e_json}") from e_json
        if not isinstance(dependencies, list) or not all(isinstance(d, str) for d in dependencies):
            raise ParseError(f"Dependencies of module '{name}' are not a list of names")
        return JsModule(name, frozenset(dependencies), match.group(3), text)

    def fetch_modules(self, version: str) -> List[JsModule]:
        modules: Dict[str, JsModule] = {}
        targets = [ENTRY_MODULE]
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ModuleFetcher") as executor:
            while targets:
                batch = [t for t in dict.fromkeys(targets) if t not in modules and t not in PSEUDO_MODULES]
                targets = []
                for module in executor.map(lambda n: self.fetch_module(n, version), batch):
                    modules[module.name] = module
                    targets.extend(d for d in module.dependencies if d not in modules)
        return list(modules.values())

    @staticmethod
    def combine_modules(modules: Sequence[JsModule]) -> str:
        """Orders modules so every dependency is loaded first and queues their init functions."""
        satisfied = set(PSEUDO_MODULES)
        pending = sorted(modules, key=lambda m: m.name)
        parts: List[str] = []
        while pending:
            ready = [m for m in pending if m.dependencies <= satisfied]
            if not ready:
                missing = sorted({d for m in pending for d in m.dependencies} - satisfied - {m.name for m in pending})
                raise ParseError(f"Player modules have unsatisfiable dependencies: {missing or [m.name for m in pending]}")
            for module in ready:
                satisfied.add(module.name)
                body = MODULE_REGEX.sub(lambda _: "\n", module.content, count=1)
                body = body.replace(f"Modules.complete('{module.name}')", "\n")
                parts.append(f"// {module.name}.js\n\n")
                parts.append(f"initScripts.push(() => {{{module.init}}});\n")
                parts.append(body)
            pending = [m for m in pending if m.name not in satisfied]
        return "".join(parts).replace("SoundHowler.", "window.SoundHowler.")

    def build_scripts(self, version: str, site_paths: Dict[str, str], modules: Sequence[JsModule]) -> str:
        common_js = self._get_text(engine_file_url(version, "Javascript/common.js"))
        return (
            f"var cfg = {json.dumps(site_paths)};\n"
            "function getFileVersion(path_components)\n{\n\treturn '';\n}\n"
            f"{common_js}\n\n"
            "let initScripts = [];\n"
            f"{self.combine_modules(modules)}\n"
            "window.addEventListener('load', function() {\n"
            "\tinitScripts.forEach((x) => x());\n"
            "}, false);\n"
        )

    # Inlined sources

    def fetch_stylesheet(self, url: str) -> str:
        css = self._get_text(url)

        def _absolute(match: re.Match) -> str:
            target = match.group(2).strip()
            if target.startswith('data:'):
                return match.group(0)
            return f'url("{urljoin(url, target)}")'

        return CSS_URL_REGEX.sub(_absolute, css)

    def inline_stylesheets(self, markup: str, scripts: str) -> Tuple[str, str]:
        soup = BeautifulSoup(markup, 'html.parser')
        for link in soup.find_all('link', rel='stylesheet'):
            href = link.get('href')
            if not href:
                continue
            url = urljoin(SITE_BASE, href)
            try:
                css = self.fetch_stylesheet(url)
            except NetworkError as e_css:
                logger.warning("Could not download stylesheet %s, skipping: %s", url, e_css)
                continue
            tag_regex = re.compile(r'<link[^>]*href=["\']' + re.escape(href) + r'["\'][^>]*>')
            markup = tag_regex.sub(lambda _: f"<style>{css}</style>", markup, count=1)

        included: List[str] = []

        def _include(match: re.Match) -> str:
            url = urljoin(SITE_BASE, f"CSS/{match.group(1)}.css")
            try:
                included.append(self.fetch_stylesheet(url))
            except NetworkError as e_css:
                logger.warning("Could not download stylesheet %s, skipping: %s", url, e_css)
                return match.group(0)
            return ""

        markup = STYLE_INCLUDE_REGEX.sub(_include, markup)
        scripts = STYLE_INCLUDE_REGEX.sub(_include, scripts)
        if included:
            styles = "".join(f"\n<style>{css}</style>" for css in included)
            if "</head>" in markup:
                markup = markup.replace("</head>", styles + "</head>", 1)
            else:
                markup = styles + markup
        return markup, scripts

    def inline_language(self, scripts: str, site_paths: Dict[str, str]) -> str:
        include = LANGUAGE_INCLUDE_REGEX.search(scripts)
        declaration = LANGUAGE_REGEX.search(scripts)
        if not include or not declaration:
            logger.warning("Could not find language loading in player scripts, skipping.")
            return scripts
        try:
            files = json.loads("[" + include.group(1).replace("'", '"') + "]")
        except json.JSONDecodeError as e_json:
            raise ParseError(f"Language file list could not be read: {e_json}") from e_json

        lang_dir = site_paths.get("lang_dir", "Languages")
        merged: Any = {}
        for lang_file in files:
            url = urljoin(SITE_BASE, f"{lang_dir}/{self.language}/{lang_file}.js")
            try:
                merged = merge_json(merged, json.loads(self._get_text(url)))
            except json.JSONDecodeError as e_json:
                raise ParseError(f"Language file {url} is not valid JSON: {e_json}") from e_json

        # Empty file list, callback run right away
        replacement = f"Languages.requestFiles([], function(){{}});\n{include.group(2)}\n"
        scripts = scripts[:include.start()] + replacement + scripts[include.end():]
        return LANGUAGE_REGEX.sub(lambda _: f"var lang = {json.dumps(merged)};", scripts, count=1)

    def inline_howler(self, scripts: str, version: str) -> str:
        match = HOWLER_REGEX.search(scripts)
        if not match:
            logger.warning("Could not find Howler.js in player scripts, skipping.")
            return scripts
        url = engine_file_url(version, "Javascript/howler.js/howler.min.js")
        try:
            howler = self._get_text(url)
        except NetworkError as e_howler:
            logger.warning("Could not download Howler.js, skipping: %s", e_howler)
            return scripts
        return scripts[:match.start()] + f"{howler}\n{match.group(1)}" + scripts[match.end():]

    def build(self, version: Optional[str] = None) -> PlayerTemplate:
        version = version or DEFAULT_PLAYER_VERSION
        logger.info("Fetching player template %s", version)
        site_paths = self.fetch_site_paths()
        markup = self._get_text(engine_file_url(version, "player.php"))
        modules = self.fetch_modules(version)

        default_module = next((m for m in modules if m.name == "default_data"), None)
        if default_module is None:
            default_module = self.fetch_module("default_data", version)
        default_places, startup = self.parse_default_data(default_module.content)

        scripts = self.build_scripts(version, site_paths, modules)
        if ANALYTICS_REGEX.search(markup):
            markup = ANALYTICS_REGEX.sub("", markup)
        else:
            logger.debug("No analytics tag in player markup.")
        markup, scripts = self.inline_stylesheets(markup, scripts)
        scripts = self.inline_language(scripts, site_paths)
        scripts = self.inline_howler(scripts, version)

        return PlayerTemplate(
            version=version,
            markup=markup,
            scripts=scripts,
            site_paths=site_paths,
            default_places=default_places,
            default_profiles_startup=startup,
        )


class TemplateStore:
    """Fetches each requested player version at most once per run."""

    def __init__(self, builder: TemplateBuilder):
        self.builder = builder
        self._lock = threading.Lock()
        self._version_locks: Dict[str, threading.Lock] = {}
        self._templates: Dict[str, PlayerTemplate] = {}
        self.fetch_count = 0

    def get(self, version: Optional[str] = None) -> PlayerTemplate:
        version = version or DEFAULT_PLAYER_VERSION
        with self._lock:
            version_lock = self._version_locks.setdefault(version, threading.Lock())
        with version_lock:
            template = self._templates.get(version)
            if template is None:
                template = self.builder.build(version)
                with self._lock:
                    self._templates[version] = template
                    self.fetch_count += 1
            return template
