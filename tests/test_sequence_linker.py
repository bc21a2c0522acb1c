import logging

import pytest

from case_models import CaseDocuments, CaseManifest, SequenceEntry
from download_errors import SequenceError
from sequence_linker import (
    ORIGIN_LITERAL, ORIGIN_SEQUENCE, SWITCH_MARKER, LinkState, SequenceLink, SequenceLinker,
)

SCRIPTS = ("function goToNextCase(next_id, save)\n{\n"
           "\twindow.location.href = 'player.php?trial_id=' + next_id + '&save_data=' + save;\n}\n")


def manifest(case_id, sequence=(), text=None):
    frames = [0, {"id": 1, "text": text}] if text else [0]
    return CaseManifest(case_id, f"Part {case_id}", "Tester", "en", {"id": case_id}, {"frames": frames},
                        "Saga" if sequence else None,
                        tuple(SequenceEntry(i, f"Part {i}") for i in sequence))


def documents_for(m):
    return CaseDocuments(trial_information=dict(m.trial_information), trial_data=m.trial_data, scripts=SCRIPTS)


def test_next_case_in_batch_is_linked_locally():
    first, second = manifest(2, (2, 3)), manifest(3, (2, 3))
    linker = SequenceLinker({2: first, 3: second}, {2: "Part_1/index.html", 3: "Part_2/index.html"})

    links = linker.resolve(linker.detect(first, SCRIPTS))

    assert [(l.source_id, l.target_id, l.origin) for l in links] == [(2, 3, ORIGIN_SEQUENCE)]
    assert links[0].state == LinkState.LINKED
    assert links[0].target_location == "../Part_2/index.html"
    scripts = linker.apply(documents_for(first), links).scripts
    assert "case 3: window.location.href = '../Part_2/index.html?save_data=' + save; break;" in scripts
    assert "default: window.location.href = 'player.php?trial_id=' + next_id" in scripts
    assert linker.detect(second, SCRIPTS) == []


def test_single_file_locations_are_siblings():
    first, second = manifest(2, (2, 3)), manifest(3, (2, 3))
    linker = SequenceLinker({2: first, 3: second}, {2: "Saga Part 1.html", 3: "Saga Part 2.html"})
    links = linker.resolve(linker.detect(first, SCRIPTS))
    assert links[0].target_location == "Saga%20Part%202.html"


def test_target_outside_batch_stays_live():
    first = manifest(2, (2, 3))
    linker = SequenceLinker({2: first}, {2: "Part_1/index.html"})

    links = linker.resolve(linker.detect(first, SCRIPTS))

    assert links[0].state == LinkState.UNLINKED
    assert linker.apply(documents_for(first), links).scripts == SCRIPTS


def test_inconsistent_sequence_is_left_unlinked(caplog):
    first, second = manifest(2, (2, 3)), manifest(3, (3, 4))
    linker = SequenceLinker({2: first, 3: second}, {2: "a/index.html", 3: "b/index.html"})

    with caplog.at_level(logging.WARNING, logger="sequence_linker"):
        links = linker.resolve(linker.detect(first, SCRIPTS))

    assert not links[0].linked
    assert "does not list case 2" in caplog.text
    with pytest.raises(SequenceError):
        linker.validate(links[0])


def test_self_links_are_rejected():
    own = manifest(5, text="Replay: https://aaonline.fr/player.php?trial_id=5")
    linker = SequenceLinker({5: own}, {5: "own/index.html"})
    links = linker.resolve(linker.detect(own, SCRIPTS))
    assert [l.origin for l in links] == [ORIGIN_LITERAL]
    assert not links[0].linked


def test_literal_player_links_are_relinked():
    first = manifest(2, (2, 3), text="Next: https://aaonline.fr/player.php?trial_id=3&save_data=abc now")
    second = manifest(3, (2, 3))
    linker = SequenceLinker({2: first, 3: second}, {2: "Part_1/index.html", 3: "Part_2/index.html"})

    result = linker.apply(documents_for(first), linker.resolve(linker.detect(first, SCRIPTS)))

    assert result.trial_data["frames"][1]["text"] == "Next: ../Part_2/index.html?save_data=abc now"
    assert first.trial_data["frames"][1]["text"].startswith("Next: https://aaonline.fr/")


def test_cycles_link_once():
    a = manifest(10, (10, 11))
    b = manifest(11, (10, 11), text="Back to https://aaonline.fr/player.php?trial_id=10")
    linker = SequenceLinker({10: a, 11: b}, {10: "A/index.html", 11: "B/index.html"})

    forward = linker.resolve(linker.detect(a, SCRIPTS))
    backward = linker.resolve(linker.detect(b, SCRIPTS))
    assert all(l.linked for l in forward + backward)
    assert backward[0].target_location == "../A/index.html"

    again = linker.resolve(forward + backward)
    assert [l.target_location for l in again] == [l.target_location for l in forward + backward]
    assert not forward[0].link("elsewhere.html")

    once = linker.apply(documents_for(a), forward)
    twice = linker.apply(once, forward)
    assert twice == once
    assert once.scripts.count(SWITCH_MARKER) == 1
    b_once = linker.apply(documents_for(b), backward)
    assert linker.apply(b_once, backward) == b_once


def test_link_state_transition():
    link = SequenceLink(1, 2, "")
    assert link.link("x.html")
    assert not link.link("y.html")
    assert link.target_location == "x.html"
