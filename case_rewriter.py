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


# case_rewriter.py
import html
import logging
import re
from typing import Any, Callable, Iterable, List, Tuple

from case_models import SITE_POINTER, AssetRecord, AssetReference, CaseDocuments

logger = logging.getLogger(__name__)

MODE_DIRECTORY = "directory"
MODE_SINGLE_FILE = "single_file"
OUTPUT_MODES = (MODE_DIRECTORY, MODE_SINGLE_FILE)

# Quoted references to the site's server-side endpoints
API_ENDPOINT_REGEX = re.compile(
    r"""(?P<quote>["'])(?:(?:https?:)?//(?:www\.)?(?:aaonline\.fr|aceattorney\.sparklin\.org))?/?"""
    r"""(?:(?:trial|bridge|default_data)\.js|save)\.php(?:\?[^"']*)?(?P=quote)"""
)
INERT_SCRIPT_URL = "about:blank"

PHP_BLOCK_REGEX = re.compile(r"(?s)<\?php(.*?)\?>")
HTML5_AUDIO_REGEX = re.compile(r"preload: true(?!, html5: (?:true|false))")


# --- JSON helpers ---

def _pointer_tokens(location: str) -> List[str]:
    if not location.startswith("/"):
        raise ValueError(f"Invalid JSON pointer: {location!r}")
    return [t.replace("~1", "/").replace("~0", "~") for t in location.split("/")[1:]]


def _step(node: Any, token: str) -> Any:
    if isinstance(node, list):
        return node[int(token)]
    return node[token]


def set_pointer(document: Any, location: str, value: Any) -> None:
    tokens = _pointer_tokens(location)
    parent = document
    for token in tokens[:-1]:
        parent = _step(parent, token)
    if isinstance(parent, list):
        parent[int(tokens[-1])] = value
    else:
        parent[tokens[-1]] = value


def get_pointer(document: Any, location: str) -> Any:
    node = document
    for token in _pointer_tokens(location):
        node = _step(node, token)
    return node


def map_json_strings(node: Any, func: Callable[[str], str]) -> Any:
    if isinstance(node, str):
        return func(node)
    if isinstance(node, list):
        return [map_json_strings(item, func) for item in node]
    if isinstance(node, dict):
        return {key: map_json_strings(value, func) for key, value in node.items()}
    return node


# --- Text helpers ---

def replace_literal(text: str, literal: str, replacement: str) -> str:
    """Replaces `literal` where it stands between quotes or parentheses."""
    for candidate in dict.fromkeys((literal, html.escape(literal, quote=False))):
        pattern = re.compile(r"""(?<=["'(])\s*""" + re.escape(candidate) + r"""\s*(?=["')])""")
        text = pattern.sub(lambda _: replacement, text)
    return text


def _neutralize(text: str) -> str:
    return API_ENDPOINT_REGEX.sub(lambda m: f"{m.group('quote')}{INERT_SCRIPT_URL}{m.group('quote')}", text)


def neutralize_api_endpoints(text: str) -> str:
    """Points quoted case-data endpoints at an inert URL. <?php ?> blocks are left for the bundler."""
    parts = []
    position = 0
    for block in PHP_BLOCK_REGEX.finditer(text):
        parts.append(_neutralize(text[position:block.start()]))
        parts.append(block.group(0))
        position = block.end()
    parts.append(_neutralize(text[position:]))
    return "".join(parts)


class Rewriter:
    """
    Points every occurrence of every asset reference at its local form: a path
    under assets/ for directory output, an inline handle for single-file output.
    Rewriting already rewritten documents with the same records changes nothing.
    """

    def __init__(self, disable_html5_audio: bool = False):
        self.disable_html5_audio = disable_html5_audio

    def rewrite(self, documents: CaseDocuments, references: Iterable[AssetReference],
                records: Iterable[AssetRecord], mode: str = MODE_DIRECTORY) -> CaseDocuments:
        if mode not in OUTPUT_MODES:
            raise ValueError(f"Unknown output mode: {mode!r}")
        single_file = mode == MODE_SINGLE_FILE
        result = documents.copy()
        by_url = {record.url: record for record in records}

        literal_sites: List[Tuple[str, str]] = []
        for reference in sorted(references, key=lambda r: r.url):
            record = by_url.get(reference.url)
            if record is None:
                raise ValueError(f"No record for asset {reference.url}")
            local = record.local_form(single_file)
            for site in reference.sites:
                if site.kind == SITE_POINTER:
                    document = result.get(site.document)
                    set_pointer(document, site.location, local)
                    if site.flag:
                        set_pointer(document, site.flag, True)
                else:
                    result.set(site.document, replace_literal(result.get(site.document), site.location, local))
                    literal_sites.append((site.document, site.location))

        result.scripts = neutralize_api_endpoints(result.scripts)
        result.markup = neutralize_api_endpoints(result.markup)
        result.trial_data = map_json_strings(result.trial_data, neutralize_api_endpoints)
        if not single_file:
            result.scripts = self.configure_audio(result.scripts)

        for document_name, literal in literal_sites:
            if replace_literal(result.get(document_name), literal, "\0") != result.get(document_name):
                logger.warning("Reference %s is still present in %s after rewriting", literal, document_name)
        return result

    def configure_audio(self, scripts: str) -> str:
        """Directory output plays sounds through HTML5 audio unless disabled."""
        html5 = "false" if self.disable_html5_audio else "true"
        return HTML5_AUDIO_REGEX.sub(lambda _: f"preload: true, html5: {html5}", scripts, count=1)
