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


# case_resolver.py
import logging
import re
from typing import Any, Dict, Optional, Tuple

from case_models import CaseManifest, SequenceEntry
from download_errors import NetworkError, NotFound, ParseError
from http_client import HttpClient
from player_template import PlayerTemplate, TemplateBuilder, TemplateStore, decode_js_json
from url_utils import case_data_url, case_player_url, extract_case_id

logger = logging.getLogger(__name__)

TRIAL_INFORMATION_REGEX = re.compile(r'(?s)var trial_information(?: = JSON\.parse\("(.*?)"\))?;')
TRIAL_DATA_REGEX = re.compile(r'(?s)var initial_trial_data = JSON\.parse\("(.*?)"\);')


def parse_sequence(trial_information: Dict[str, Any]) -> Tuple[Optional[str], Tuple[SequenceEntry, ...]]:
    sequence = trial_information.get("sequence")
    if not isinstance(sequence, dict):
        return None, ()
    entries = []
    for item in sequence.get("list") or []:
        try:
            entries.append(SequenceEntry(int(item["id"]), str(item.get("title", ""))))
        except (KeyError, TypeError, ValueError) as e_entry:
            raise ParseError(f"Malformed sequence entry {item!r}: {e_entry}") from e_entry
    return sequence.get("title"), tuple(entries)


def parse_case_script(case_id: int, script: str) -> CaseManifest:
    """Builds a manifest from the text of trial.js.php."""
    info_match = TRIAL_INFORMATION_REGEX.search(script)
    if not info_match:
        raise ParseError(f"Case {case_id}: case script has an unknown format", str(case_id))
    if info_match.group(1) is None:
        raise NotFound(f"Case {case_id} does not exist or is private", str(case_id))
    data_match = TRIAL_DATA_REGEX.search(script)
    if not data_match:
        raise ParseError(f"Case {case_id}: case data missing from case script", str(case_id))

    trial_information = decode_js_json(info_match.group(1))
    trial_data = decode_js_json(data_match.group(1))
    if not isinstance(trial_information, dict) or not isinstance(trial_data, dict):
        raise ParseError(f"Case {case_id}: case data is not an object", str(case_id))
    if "id" in trial_information and str(trial_information["id"]) != str(case_id):
        raise ParseError(f"Case {case_id}: server returned case {trial_information['id']}", str(case_id))

    sequence_title, sequence = parse_sequence(trial_information)
    return CaseManifest(
        case_id=case_id,
        title=str(trial_information.get("title") or f"Case {case_id}"),
        author=str(trial_information.get("author") or ""),
        language=str(trial_information.get("language") or "en"),
        trial_information=trial_information,
        trial_data=trial_data,
        sequence_title=sequence_title,
        sequence=sequence,
    )


class CaseResolver:
    def __init__(self, client: HttpClient, templates: Optional[TemplateStore] = None, language: str = "en"):
        self.client = client
        self.templates = templates or TemplateStore(
            TemplateBuilder(client, language=language, max_workers=client.concurrency_limit))

    def resolve(self, id_or_url: str) -> CaseManifest:
        case_id = extract_case_id(str(id_or_url))
        if case_id is None:
            raise ParseError(f"Not a case id or case URL: {id_or_url!r}", str(id_or_url))

        logger.info("Resolving case %d", case_id)
        try:
            script = self.client.get_text(case_data_url(case_id), referer=case_player_url(case_id),
                                          sec_fetch_dest="script")
        except NetworkError as e_net:
            if e_net.status_code is not None and 400 <= e_net.status_code < 500 and not e_net.transient:
                raise NotFound(f"Case {case_id} is not accessible (HTTP {e_net.status_code})",
                               str(id_or_url)) from e_net
            raise
        manifest = parse_case_script(case_id, script)
        logger.info("Resolved case %d: %s by %s", case_id, manifest.title, manifest.author or "unknown author")
        return manifest

    def template(self, version: Optional[str] = None) -> PlayerTemplate:
        return self.templates.get(version)
