# browser_emulator.py
from urllib.parse import urlparse
from typing import Optional, Dict

from url_utils import (
    AUDIO_EXTENSIONS, FONT_EXTENSIONS, IMAGE_EXTENSIONS, SCRIPT_EXTENSIONS,
    host_matches, url_extension,
)

# Hosts that refuse browser-looking requests; subdomains match too
DOMAIN_SPECIFIC_HEADERS: Dict[str, Dict[str, str]] = {
    'imgur.com': {"User-Agent": "curl/8.1.1", "Accept": "*/*"},
}

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"

ACCEPT_BY_DEST = {
    "style": "text/css,*/*;q=0.1",
    "script": "application/javascript, */*;q=0.8",
    "document": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "image": "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
    "audio": "audio/webm,audio/ogg,audio/wav,audio/*;q=0.9,application/ogg;q=0.7,*/*;q=0.5",
    "font": "*/*",
}


def sec_fetch_dest_for_url(url: str) -> str:
    ext = url_extension(url)
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    if ext in FONT_EXTENSIONS:
        return "font"
    if ext in SCRIPT_EXTENSIONS or ext == ".php":
        return "script"
    if ext == ".css":
        return "style"
    return "empty"


def get_request_headers(
    target_url: str,
    referring_page_url: Optional[str] = None,
    sec_fetch_dest_override: Optional[str] = None
) -> Dict[str, str]:
    """
    Generates headers for an HTTP request, mimicking the browser running the player.
    """
    parsed_target = urlparse(target_url)
    dest = sec_fetch_dest_override or sec_fetch_dest_for_url(target_url)

    headers = {
        "User-Agent": DEFAULT_USER_AGENT,
        "Accept": ACCEPT_BY_DEST.get(dest, "*/*"),
        "Accept-Language": "en-US,en;q=0.9,fr;q=0.8",
        "Sec-Fetch-Dest": dest,
    }

    for domain, extra in DOMAIN_SPECIFIC_HEADERS.items():
        if host_matches(parsed_target.hostname, [domain]):
            headers.update(extra)

    if referring_page_url:
        parsed_referer = urlparse(referring_page_url)
        same_origin = parsed_target.netloc.lower() == parsed_referer.netloc.lower()
        headers["Sec-Fetch-Site"] = "same-origin" if same_origin else "cross-site"
        headers["Referer"] = referring_page_url
    else:
        headers["Sec-Fetch-Site"] = "none"
    headers["Sec-Fetch-Mode"] = "navigate" if dest == "document" else "no-cors"

    return headers
