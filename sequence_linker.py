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


# sequence_linker.py
import logging
import posixpath
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import quote

from case_models import CaseDocuments, CaseManifest
from case_rewriter import map_json_strings
from download_errors import SequenceError

logger = logging.getLogger(__name__)

# The player's jump to the next case of a sequence
REDIRECT_REGEX = re.compile(
    r"""window\.location\.href\s*=\s*(['"])(?:[^'"]*/)?player\.php\?trial_id=\1\s*\+\s*"""
    r"""(?P<target>[\w.$\[\]]+)\s*\+\s*['"]&(?P<save>[^;]*);"""
)
# Player links written into case data by authors
PLAYER_LINK_REGEX = re.compile(
    r"""https?://(?:www\.)?(?:aaonline\.fr|aceattorney\.sparklin\.org)/(?:player|jeu)\.php"""
    r"""\?(?:trial_id|id_proces)=(?P<id>\d+)(?P<rest>&[^\s"'<>]*)?"""
)
SWITCH_MARKER = "/* offline sequence links */ "

ORIGIN_SEQUENCE = "sequence"
ORIGIN_LITERAL = "literal"


class LinkState(str, Enum):
    UNLINKED = "unlinked"
    LINKED = "linked"


@dataclass
class SequenceLink:
    source_id: int
    target_id: int
    trigger: str
    origin: str = ORIGIN_SEQUENCE
    state: LinkState = LinkState.UNLINKED
    target_location: Optional[str] = None

    @property
    def linked(self) -> bool:
        return self.state == LinkState.LINKED

    def link(self, location: str) -> bool:
        """Unlinked -> Linked. Linking a linked edge does nothing and returns False."""
        if self.linked:
            return False
        self.state = LinkState.LINKED
        self.target_location = location
        return True


class SequenceLinker:
    """
    Links cases of one batch together.

    `locations` maps every case id of the batch to its index document,
    relative to the output root ("Case B/index.html" or "Case B.html").
    """

    def __init__(self, manifests: Dict[int, CaseManifest], locations: Dict[int, str]):
        self.manifests = manifests
        self.locations = locations
        self._linked_pairs: Set[Tuple[int, int]] = set()

    def relative_location(self, source_id: int, target_id: int) -> str:
        source_dir = posixpath.dirname(self.locations[source_id]) or "."
        return quote(posixpath.relpath(self.locations[target_id], source_dir))

    # --- Detection ---

    def detect(self, manifest: CaseManifest, scripts: str = "") -> List[SequenceLink]:
        links: List[SequenceLink] = []
        redirect = REDIRECT_REGEX.search(scripts)
        trigger = redirect.group(0) if redirect else ""
        for target_id in manifest.next_case_ids:
            links.append(SequenceLink(manifest.case_id, target_id, trigger, ORIGIN_SEQUENCE))

        seen: Set[Tuple[int, str]] = set()

        def _collect(text: str) -> str:
            for match in PLAYER_LINK_REGEX.finditer(text):
                key = (int(match.group("id")), match.group(0))
                if key not in seen:
                    seen.add(key)
                    links.append(SequenceLink(manifest.case_id, key[0], match.group(0), ORIGIN_LITERAL))
            return text

        map_json_strings(manifest.trial_data, _collect)
        return links

    # --- State transitions ---

    def validate(self, link: SequenceLink) -> None:
        if link.source_id == link.target_id:
            raise SequenceError(f"Case {link.source_id} links to itself", link.source_id, link.target_id)
        if link.origin != ORIGIN_SEQUENCE:
            return
        target = self.manifests.get(link.target_id)
        if target is not None and target.sequence and link.source_id not in target.sequence_ids:
            raise SequenceError(
                f"Case {link.target_id} does not list case {link.source_id} in its sequence",
                link.source_id, link.target_id)

    def resolve(self, links: Iterable[SequenceLink]) -> List[SequenceLink]:
        resolved = []
        for link in links:
            resolved.append(link)
            try:
                self.validate(link)
            except SequenceError as e_seq:
                logger.warning("Leaving sequence link unlinked: %s", e_seq)
                continue
            if link.target_id not in self.locations or link.source_id not in self.locations:
                logger.info("Case %d links to case %d, which is not part of this download; "
                            "the link keeps pointing at the live site", link.source_id, link.target_id)
                continue
            if link.linked:
                continue
            pair = (link.source_id, link.target_id)
            link.link(self.relative_location(*pair))
            if pair not in self._linked_pairs:
                self._linked_pairs.add(pair)
                logger.info("Linked case %d to case %d (%s)", link.source_id, link.target_id, link.target_location)
        return resolved

    # --- Emission ---

    def apply(self, documents: CaseDocuments, links: Iterable[SequenceLink]) -> CaseDocuments:
        """Points linked triggers of a case at their sibling outputs. Unlinked triggers stay live."""
        linked = [link for link in links if link.linked]
        result = documents.copy()
        if not linked:
            return result
        result.scripts = self.emit_redirect(result.scripts, linked)

        literal_targets = {l.target_id: l.target_location for l in linked if l.origin == ORIGIN_LITERAL}
        if literal_targets:
            def _relink(text: str) -> str:
                def _replace(match: re.Match) -> str:
                    location = literal_targets.get(int(match.group("id")))
                    if location is None:
                        return match.group(0)
                    rest = match.group("rest")
                    return location + ("?" + rest[1:] if rest else "")
                return PLAYER_LINK_REGEX.sub(_replace, text)

            result.trial_data = map_json_strings(result.trial_data, _relink)
            result.trial_information = map_json_strings(result.trial_information, _relink)
        return result

    @staticmethod
    def emit_redirect(scripts: str, linked: List[SequenceLink]) -> str:
        if SWITCH_MARKER in scripts:
            return scripts
        match = REDIRECT_REGEX.search(scripts)
        if not match:
            if any(l.origin == ORIGIN_SEQUENCE for l in linked):
                logger.warning("Could not find the sequence redirect in player scripts; "
                               "sequence links stay live")
            return scripts
        targets = sorted({(l.target_id, l.target_location) for l in linked})
        quote_char = match.group(1)
        branches = "".join(
            f"case {target_id}: window.location.href = {quote_char}{location}?{match.group('save')}; break;\n"
            for target_id, location in targets
        )
        replacement = (f"{SWITCH_MARKER}switch (Number.parseInt({match.group('target')})) {{\n"
                       f"{branches}default: {match.group(0)}\n}}")
        return scripts[:match.start()] + replacement + scripts[match.end():]
