import json

import pytest

from asset_graph import AssetGraph
from case_models import STATUS_FAILED, STATUS_FETCHED, AssetRecord
from case_resolver import parse_case_script
from case_rewriter import (
    MODE_DIRECTORY, MODE_SINGLE_FILE, Rewriter, get_pointer, neutralize_api_endpoints, replace_literal,
)
from conftest import case_script, first_case
from download_errors import AssetError
from player_template import TemplateBuilder


@pytest.fixture
def graph(client):
    template = TemplateBuilder(client).build()
    graph = AssetGraph(template)
    graph.enumerate(parse_case_script(1, case_script(*first_case())))
    return graph


def fetched_records(references):
    return [AssetRecord(r, f"asset{i}.bin", STATUS_FETCHED, content=b"payload-%d" % i,
                        content_type="application/octet-stream")
            for i, r in enumerate(references)]


def test_directory_mode_points_every_site_at_local_files(graph):
    records = fetched_records(graph.references)
    result = Rewriter().rewrite(graph.documents, graph.references, records, MODE_DIRECTORY)

    by_url = {r.url: r for r in records}
    for reference in graph.references:
        for site in reference.sites:
            if site.kind == "pointer":
                assert get_pointer(result.get(site.document), site.location) == by_url[reference.url].relative_path
                if site.flag:
                    assert get_pointer(result.get(site.document), site.flag) is True
    assert "aaonline.fr" not in json.dumps(result.trial_data)
    assert "img/logo.png" not in result.markup
    assert "https://aaonline.fr/CSS/img/paper.png" not in result.markup
    assert "'about:blank'" in result.scripts
    assert "preload: true, html5: true" in result.scripts


def test_originals_are_not_modified(graph):
    before = graph.documents.copy()
    Rewriter().rewrite(graph.documents, graph.references, fetched_records(graph.references))
    assert graph.documents == before


def test_single_file_mode_writes_inline_handles(graph):
    records = fetched_records(graph.references)
    result = Rewriter().rewrite(graph.documents, graph.references, records, MODE_SINGLE_FILE)

    badge = next(r for r in records if r.url.endswith("/dossier/badge.png"))
    assert result.trial_data["evidence"][1]["icon"] == badge.inline_handle
    assert "data:" not in json.dumps(result.trial_data)
    assert result.trial_data["evidence"][1]["icon_external"] is True
    assert 'src="aao-asset:' in result.markup
    assert "html5:" not in result.scripts


def test_html5_audio_can_be_disabled(graph):
    result = Rewriter(disable_html5_audio=True).rewrite(graph.documents, graph.references,
                                                       fetched_records(graph.references))
    assert "preload: true, html5: false" in result.scripts


def test_rewriting_is_idempotent(graph):
    records = fetched_records(graph.references)
    rewriter = Rewriter()
    for mode in (MODE_DIRECTORY, MODE_SINGLE_FILE):
        once = rewriter.rewrite(graph.documents, graph.references, records, mode)
        twice = rewriter.rewrite(once, graph.references, records, mode)
        assert twice == once


def test_failed_assets_still_leave_the_origin(graph):
    records = fetched_records(graph.references)
    index = next(i for i, r in enumerate(records) if r.reference.sites[0].kind == "pointer")
    failed = records[index]
    records[index] = AssetRecord(failed.reference, failed.local_name, STATUS_FAILED,
                             error=AssetError(failed.url, "HTTP 404"))

    directory = Rewriter().rewrite(graph.documents, graph.references, records, MODE_DIRECTORY)
    single = Rewriter().rewrite(graph.documents, graph.references, records, MODE_SINGLE_FILE)

    site = failed.reference.sites[0]
    assert get_pointer(directory.get(site.document), site.location) == failed.relative_path
    assert get_pointer(single.get(site.document), site.location) == failed.inline_handle


def test_every_reference_needs_a_record(graph):
    with pytest.raises(ValueError):
        Rewriter().rewrite(graph.documents, graph.references, fetched_records(graph.references)[1:])


def test_neutralize_api_endpoints_skips_server_blocks():
    text = "<?php include('bridge.js.php'); ?>\nvar u = 'trial.js.php?trial_id=3'; var v = \"https://aaonline.fr/bridge.js.php\";"
    assert neutralize_api_endpoints(text) == (
        "<?php include('bridge.js.php'); ?>\nvar u = 'about:blank'; var v = \"about:blank\";")
    assert neutralize_api_endpoints("var SAVE_URL = 'save.php';") == "var SAVE_URL = 'about:blank';"
    assert neutralize_api_endpoints("post('https://aaonline.fr/save.php?trial_id=3')") == "post('about:blank')"
    assert neutralize_api_endpoints("var page = 'save.html';") == "var page = 'save.html';"


def test_replace_literal_only_touches_delimited_occurrences():
    text = 'a("img/x.png") b=\'img/x.png\' c=img/x.png d="other/img/x.png" e=&quot;'
    result = replace_literal(text, "img/x.png", "assets/x.png")
    assert result == 'a("assets/x.png") b=\'assets/x.png\' c=img/x.png d="other/img/x.png" e=&quot;'
