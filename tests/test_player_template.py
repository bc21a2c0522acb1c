from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import BASE, ENGINE
from download_errors import NetworkError, ParseError
from player_template import JsModule, TemplateBuilder, TemplateStore, decode_js_json


@pytest.fixture
def template(client):
    return TemplateBuilder(client).build()


def test_site_paths_are_stripped(template):
    assert template.site_paths["picture_dir"] == "Ressources/Images"
    assert template.icon_dir() == ["Ressources/Images", "persos"]
    assert template.sprite_dir("still", "Phoenix") == ["Ressources/Images", "persosFixes", "Phoenix"]


def test_default_data_is_parsed(template):
    assert template.default_places["-1"]["background"]["image"] == "pw_courtroom"
    assert template.default_profiles_startup == frozenset({"Phoenix/1"})


def test_modules_are_combined_in_dependency_order(template):
    scripts = template.scripts
    assert scripts.index("// default_data.js") < scripts.index("// player.js")
    assert scripts.index("// trial.js") < scripts.index("// player.js")
    assert "Modules.load(" not in scripts
    assert "Modules.complete(" not in scripts
    assert "initScripts.push(() => {\n\t\tstartPlayer();\n\t});" in scripts
    assert scripts.startswith("var cfg = ")


def test_language_howler_and_styles_are_inlined(template):
    assert 'var lang = {"common": {"yes": "Yes"}, "player": {"press": "Press"}};' in template.scripts
    assert "Languages.requestFiles([], function(){});" in template.scripts
    assert "var Howl = function(options)" in template.scripts
    assert "includeScript('howler.js" not in template.scripts
    assert "includeStyle('theme')" not in template.scripts
    assert 'url("https://aaonline.fr/CSS/img/paper.png")' in template.markup
    assert "color: #224;" in template.markup
    assert "<link" not in template.markup
    assert "UA-123456-1" not in template.markup


def test_missing_language_file_is_an_error(client, site):
    del site.routes[f"{BASE}/Languages/en/player.js"]
    with pytest.raises(NetworkError):
        TemplateBuilder(client).build()


def test_store_fetches_each_version_once(client, site):
    store = TemplateStore(TemplateBuilder(client))

    with ThreadPoolExecutor(max_workers=4) as executor:
        templates = list(executor.map(lambda _: store.get(None), range(6)))

    assert all(t is templates[0] for t in templates)
    assert store.fetch_count == 1
    assert site.count(f"{ENGINE}/player.php") == 1


def test_unsatisfiable_dependencies_are_reported():
    modules = [JsModule("a", frozenset({"missing"}), "", "")]
    with pytest.raises(ParseError):
        TemplateBuilder.combine_modules(modules)


def test_decode_js_json_handles_escaped_quotes():
    assert decode_js_json(r'{\"name\": \"Phoenix\'s badge\"}') == {"name": "Phoenix's badge"}
    with pytest.raises(ParseError):
        decode_js_json("{not json")
