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


# url_utils.py
import posixpath
import re
from functools import lru_cache
from typing import Iterable, Optional
from urllib.parse import parse_qs, unquote, urljoin, urlparse, urlunparse

# Ace Attorney Online hosts
AAONLINE_BASE = "https://aaonline.fr"
LEGACY_HOST = "aceattorney.sparklin.org"
ORIGIN_HOSTS = {"aaonline.fr", "www.aaonline.fr", LEGACY_HOST, "www." + LEGACY_HOST}

# Raw files of the player engine, addressed by commit-ish
ENGINE_RAW_URL = "https://bitbucket.org/AceAttorneyOnline/aao-game-creation-engine/raw/"

# Hosts whose URLs count as assets when found in free text (scripts, stylesheets).
# Subdomains match too.
KNOWN_ASSET_HOSTS = (
    "aaonline.fr",
    LEGACY_HOST,
    "bitbucket.org",
    "imgur.com",
    "photobucket.com",
    "googleusercontent.com",
    "discordapp.com",
    "discordapp.net",
    "tinypic.com",
    "imageshack.us",
    "deviantart.net",
    "dropboxusercontent.com",
)

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.webp', '.svg', '.bmp', '.ico', '.apng'}
AUDIO_EXTENSIONS = {'.mp3', '.ogg', '.opus', '.wav', '.m4a', '.aac', '.flac'}
FONT_EXTENSIONS = {'.ttf', '.otf', '.woff', '.woff2', '.eot'}
SCRIPT_EXTENSIONS = {'.js'}
ASSET_EXTENSIONS = IMAGE_EXTENSIONS | AUDIO_EXTENSIONS | FONT_EXTENSIONS | SCRIPT_EXTENSIONS

CASE_URL_REGEX = re.compile(
    r"^(?:https?://)?(?:www\.)?(?:aaonline\.fr|aceattorney\.sparklin\.org)"
    r"/(?:player|jeu)\.php\?(?:[^#]*?&)?(?:trial_id|id_proces)=(\d+)",
    re.IGNORECASE,
)
BARE_ID_REGEX = re.compile(r"^\d+$")


def preprocess_case_input(raw_input: str) -> Optional[str]:
    """
    Cleans a user-provided case reference.
    Bare ids are returned as-is, URLs get a scheme when it is missing.
    """
    if not raw_input:
        return None
    value = raw_input.strip().strip('"\'')
    if not value:
        return None
    if BARE_ID_REGEX.match(value):
        return value
    if "://" not in value:
        value = "https://" + value
    return value


def extract_case_id(raw_input: str) -> Optional[int]:
    """
    Extracts the trial id from a bare id, a player URL on the current host,
    or a legacy sparklin.org URL (player.php?trial_id= or jeu.php?id_proces=).
    """
    value = preprocess_case_input(raw_input)
    if value is None:
        return None
    if BARE_ID_REGEX.match(value):
        return int(value)
    match = CASE_URL_REGEX.match(value)
    if match:
        return int(match.group(1))
    parsed = urlparse(value)
    if (parsed.hostname or "").lower() in ORIGIN_HOSTS:
        params = parse_qs(parsed.query)
        for key in ("trial_id", "id_proces"):
            candidates = params.get(key)
            if candidates and BARE_ID_REGEX.match(candidates[0]):
                return int(candidates[0])
    return None


def case_player_url(case_id: int) -> str:
    return f"{AAONLINE_BASE}/player.php?trial_id={case_id}"


def case_data_url(case_id: int) -> str:
    return f"{AAONLINE_BASE}/trial.js.php?trial_id={case_id}"


def engine_file_url(version: str, path: str) -> str:
    return f"{ENGINE_RAW_URL}{version}/{path.lstrip('/')}"


@lru_cache(maxsize=4096)
def canonicalize_url(url: str, base: Optional[str] = None) -> Optional[str]:
    """
    Normalized form of an asset URL, used as the deduplication key.
    Relative URLs are resolved against `base`; returns None for anything that
    is not http(s) once resolved.
    """
    if not url:
        return None
    candidate = url.strip().replace('\\', '/')
    if candidate.startswith('data:') or candidate.startswith('javascript:'):
        return None
    if candidate.startswith('//'):
        candidate = "https:" + candidate
    if base:
        candidate = urljoin(base, candidate)
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return None
    if parsed.scheme.lower() not in ('http', 'https') or not parsed.hostname:
        return None

    host = parsed.hostname.lower()
    port = parsed.port if parsed.port not in (None, 80, 443) else None
    netloc = f"{host}:{port}" if port else host

    path = re.sub(r'/{2,}', '/', parsed.path or '/')
    trailing_slash = path.endswith('/')
    path = posixpath.normpath(path)
    if path == '.':
        path = '/'
    if trailing_slash and not path.endswith('/'):
        path += '/'
    return urlunparse((parsed.scheme.lower(), netloc, path, '', parsed.query, ''))


def host_matches(host: Optional[str], suffixes: Iterable[str]) -> bool:
    if not host:
        return False
    host = host.lower()
    return any(host == s or host.endswith('.' + s) for s in suffixes)


def url_extension(url: str) -> str:
    """Lowercase extension of the URL path, including the dot, or ''."""
    path = unquote(urlparse(url).path)
    return posixpath.splitext(path)[1].lower()


def is_allowed_asset_url(url: str, extra_hosts: Iterable[str] = ()) -> bool:
    """
    Allow-list check for URLs found in free text: the extension must be a
    known asset extension and the host a known asset host.
    """
    if url_extension(url) not in ASSET_EXTENSIONS:
        return False
    host = urlparse(url).hostname
    return host_matches(host, KNOWN_ASSET_HOSTS) or host_matches(host, extra_hosts)


def sanitize_filename_component(name_part: str) -> str:
    name_part = unquote(name_part)
    name_part = re.sub(r'[<>:"/\\|?*%#\s]', '_', name_part)
    name_part = re.sub(r'[\x00-\x1f]', '', name_part)
    name_part = re.sub(r'_+', '_', name_part)
    name_part = name_part.strip('_. ')
    return name_part[:200]
