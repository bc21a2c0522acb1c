import io
import json
import threading
import time

import pytest
from PIL import Image

from download_config import RetryPolicy
from http_client import HttpClient

BASE = "https://aaonline.fr"
ENGINE = "https://bitbucket.org/AceAttorneyOnline/aao-game-creation-engine/raw/master"
IMAGES = f"{BASE}/Ressources/Images"

SITE_CONFIG = {
    "picture_dir": "Ressources/Images/",
    "icon_subdir": "persos/",
    "talking_subdir": "persosAnim/",
    "still_subdir": "persosFixes/",
    "startup_subdir": "persosStartup/",
    "evidence_subdir": "dossier/",
    "bg_subdir": "cinematiques/",
    "popups_subdir": "popups/",
    "locks_subdir": "psyche_locks/",
    "music_dir": "Ressources/Musiques/",
    "sounds_dir": "Ressources/Sons/",
    "voices_dir": "Ressources/Voix/",
    "lang_dir": "Languages/",
}

DEFAULT_PLACES = {
    "-1": {"id": -1, "name": "Courtroom", "background": {"image": "pw_courtroom", "external": 0},
           "background_objects": [], "foreground_objects": []},
    "-2": {"id": -2, "name": "Lobby", "background": {"image": "pw_lobby", "external": 0},
           "background_objects": [], "foreground_objects": []},
}
DEFAULT_PROFILES_STARTUP = {"Phoenix/1": 1}

PLAYER_MARKUP = """<?php
include('common_render.php');
?>
<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8" />
<title><?php echo 'Ace Attorney Online - Trial Player (Loading)'; ?></title>
<link rel="stylesheet" type="text/css" href="CSS/player.css" />
<script type="text/javascript">
<?php include('bridge.js.php'); ?>
</script>
<script>window.ga = function(){}; ga('create', 'UA-123456-1');</script>
</head>
<body lang="<?php echo language_backend('en'); ?>">
<h1 id="loading"><?php echo 'Loading trial ...'; ?></h1>
<img id="logo" src="img/logo.png" alt="" />
</body>
</html>
"""

COMMON_JS = """function includeScript(name, async, prefix, callback) { callback(); }
function includeStyle(name) {}
var TRIAL_DATA_URL = 'trial.js.php';
"""

PLAYER_MODULE = """Modules.load(new Object({
	name : 'player',
	dependencies : ['trial', 'default_data', 'dom_loaded'],
	init : function() {
		startPlayer();
	}
}));

var lang = new Object();
Languages.requestFiles(['common', 'player'], function(){
	translateNode(document.body);
});
includeStyle('theme');
includeScript('howler.js/howler.min', false, '', function(){window.soundReady = true;});

function getSoundOptions(url)
{
	return { src: [url], preload: true };
}

function getVoiceUrl(voice_id, ext)
{
	return cfg.voices_dir + 'voice_singleblip_' + (-voice_id) + '.' + ext;
}

function getDefaultSpriteUrl(base, sprite_id, status)
{
	return cfg.picture_dir + cfg[status + '_subdir'] + base + '/' + sprite_id + '.gif';
}

function goToNextCase(next_id, save)
{
	window.location.href = 'player.php?trial_id=' + next_id + '&save_data=' + save;
}

function showPsycheLocks(count)
{
	for (var i = 1; i <= count; i++)
	{
		var chains = new Image();
		chains.src = cfg.picture_dir + cfg.locks_subdir + 'fg_chains_appear.gif?id=' + i;
		var lock = new Image();
		lock.src = cfg.picture_dir + cfg.locks_subdir + 'jfa_lock_appears.gif?id=' + i;
	}
}

function breakPsycheLock(lock_id)
{
	var lock = new Image();
	lock.src = cfg.picture_dir + cfg.locks_subdir + 'jfa_lock_explodes.gif?id=' + lock_id;
	var chains = new Image();
	chains.src = cfg.picture_dir + cfg.locks_subdir + 'fg_chains_disappear.gif?id=' + lock_id;
}

function preloadDefaultPlaces(img_container)
{
	for (var i in default_places)
	{
		preloadPlaceImages(default_places[i], img_container);
	}
}

Modules.complete('player');
"""

TRIAL_MODULE = """<?php
include('common_render.php');
?>
Modules.load(new Object({
	name : 'trial',
	dependencies : [],
	init : function() {
		trial_loaded = true;
	}
}));

<?php
echo 'var trial_information;';
?>
var trial_loaded = false;
Modules.complete('trial');
"""

DEFAULT_DATA_MODULE = """Modules.load(new Object({
	name : 'default_data',
	dependencies : [],
	init : function() {
	}
}));

var default_profiles_startup = JSON.parse(%s);
var default_places = %s;
Modules.complete('default_data');
""" % (json.dumps(json.dumps(DEFAULT_PROFILES_STARTUP)), json.dumps(DEFAULT_PLACES))

HOWLER_JS = "/*! howler.js */ var Howl = function(options) { this.options = options; };"
PLAYER_CSS = "body { background: url(img/paper.png) repeat; }"
THEME_CSS = "h1 { color: #224; }"


def png_bytes(size=(64, 80), color=(200, 30, 30)):
    output = io.BytesIO()
    Image.new("RGB", size, color).save(output, format="PNG")
    return output.getvalue()


def gif_bytes(size=(16, 16), frames=2):
    images = [Image.new("RGB", size, (60 * i, 120, 255 - 60 * i)) for i in range(frames)]
    output = io.BytesIO()
    images[0].save(output, format="GIF", save_all=True, append_images=images[1:], duration=100, loop=0)
    return output.getvalue()


def case_script(trial_information, trial_data):
    return (f"var trial_information = JSON.parse({json.dumps(json.dumps(trial_information))});\n"
            f"var initial_trial_data = JSON.parse({json.dumps(json.dumps(trial_data))});\n")


def first_case():
    information = {"id": 1, "title": "The First Turnabout", "author": "Tester", "language": "en",
                   "sequence": None}
    data = {
        "profiles": [0, {
            "id": 1, "base": "Phoenix", "icon": "",
            "custom_sprites": [0, {"talking": "https://i.imgur.com/talk.gif",
                                   "still": "https://i.imgur.com/still.png", "startup": ""}],
        }],
        "frames": [0, {"id": 1, "place": -1, "characters": [{"profile_id": 1, "sprite_id": -1}]}],
        "evidence": [0, {
            "name": "Attorney's Badge", "icon": "badge", "icon_external": 0,
            "check_button_data": [0,
                                  {"type": "image", "content": "https://i.photobucket.com/albums/court.png"},
                                  {"type": "text", "content": "Proof of my job."}],
        }],
        "places": [0, {"background": {"image": "https://i.imgur.com/bg.jpg", "external": 1},
                       "background_objects": [], "foreground_objects": []}],
        "popups": [0, {"path": "objection", "external": 0}],
        "music": [0, {"path": "https://music.example.org/theme.mp3", "external": 1}],
        "sounds": [0, {"path": "whip", "external": 0}],
    }
    return information, data


def sequence_case(case_id, title, icon, next_text=None):
    information = {"id": case_id, "title": title, "author": "Tester", "language": "en",
                   "sequence": {"title": "Saga", "list": [{"id": 2, "title": "Saga Part 1"},
                                                          {"id": 3, "title": "Saga Part 2"}]}}
    frame = {"id": 1, "place": 0, "characters": []}
    if next_text:
        frame["text"] = next_text
    data = {"profiles": [0, {"id": 1, "base": "Maya", "icon": icon, "custom_sprites": []}],
            "frames": [0, frame]}
    return information, data


def locked_case():
    information = {"id": 5, "title": "Turnabout Locks", "author": "Tester", "language": "en", "sequence": None}
    locks = {"locks_to_display": [{"x": 0, "y": 0}, {"x": 40, "y": 0}, {"x": 80, "y": 0}], "hidden": False}
    data = {
        "profiles": [0, {"id": 1, "base": "Edgeworth", "icon": "https://i.imgur.com/edgeworth.png",
                         "custom_sprites": []}],
        "frames": [0, {"id": 1, "place": 0, "characters": []}],
        "scenes": [0, {"name": "Office", "dialogues": [0,
                                                      {"talk_topics": [], "locks": None},
                                                      {"talk_topics": [], "locks": locks}]}],
    }
    return information, data


CONTENT_TYPES = {
    ".png": "image/png", ".gif": "image/gif", ".jpg": "image/jpeg", ".mp3": "audio/mpeg",
    ".opus": "audio/ogg", ".wav": "audio/wav",
}


def fake_asset(url):
    """Distinct bytes per URL, typed by extension."""
    for ext, content_type in CONTENT_TYPES.items():
        if url.endswith(ext):
            return content_type, b"asset:" + url.encode("utf-8")
    return "application/octet-stream", b"asset:" + url.encode("utf-8")


CASE_ONE_ASSETS = [
    f"{IMAGES}/persos/Phoenix.png",
    "https://i.imgur.com/talk.gif",
    "https://i.imgur.com/still.png",
    f"{IMAGES}/persosAnim/Phoenix/1.gif",
    f"{IMAGES}/persosFixes/Phoenix/1.gif",
    f"{IMAGES}/persosStartup/Phoenix/1.gif",
    f"{IMAGES}/dossier/badge.png",
    "https://i.photobucket.com/albums/court.png",
    "https://i.imgur.com/bg.jpg",
    f"{IMAGES}/cinematiques/pw_courtroom.jpg",
    f"{IMAGES}/popups/objection.gif",
    "https://music.example.org/theme.mp3",
    f"{BASE}/Ressources/Sons/whip.mp3",
    f"{BASE}/img/logo.png",
    f"{BASE}/CSS/img/paper.png",
] + [f"{BASE}/Ressources/Voix/voice_singleblip_{n}.{ext}" for n in (1, 2, 3) for ext in ("opus", "wav", "mp3")]

LOCK_ASSETS = [f"{IMAGES}/psyche_locks/{name}.gif" for name in (
    "fg_chains_appear", "jfa_lock_appears", "jfa_lock_explodes", "fg_chains_disappear")]


class FakeResponse:
    def __init__(self, url, status_code=200, content=b"", content_type=None):
        self.url = url
        self.status_code = status_code
        self.content = content
        self.headers = {"Content-Type": content_type} if content_type else {}


class FakeSession:
    """
    A requests-compatible session serving an in-memory site.

    `routes` maps URLs to (content_type, body). `failures` maps URLs to a list
    of status codes or exceptions consumed before the route is served.
    """

    def __init__(self, routes=None, delay=0.0):
        self.routes = dict(routes or {})
        self.failures = {}
        self.delay = delay
        self.requests = []
        self.closed = False
        self._lock = threading.Lock()

    def get(self, url, headers=None, timeout=None, allow_redirects=True):
        with self._lock:
            self.requests.append(url)
            pending = self.failures.get(url)
            failure = pending.pop(0) if pending else None
        if self.delay:
            time.sleep(self.delay)
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return FakeResponse(url, failure, b"error", "text/html")
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(url, 404, b"<html>Not found</html>", "text/html")
        content_type, body = route
        if isinstance(body, str):
            body = body.encode("utf-8")
        return FakeResponse(url, 200, body, content_type)

    def count(self, url):
        with self._lock:
            return self.requests.count(url)

    def close(self):
        self.closed = True


def build_site():
    js = "text/javascript; charset=utf-8"
    routes = {
        f"{BASE}/bridge.js.php": (js, f"var cfg = {json.dumps(SITE_CONFIG)};\n"),
        f"{BASE}/default_data.js.php": (js, DEFAULT_DATA_MODULE),
        f"{ENGINE}/player.php": ("text/plain; charset=utf-8", PLAYER_MARKUP),
        f"{ENGINE}/trial.js.php": ("text/plain; charset=utf-8", TRIAL_MODULE),
        f"{ENGINE}/Javascript/common.js": (js, COMMON_JS),
        f"{ENGINE}/Javascript/player.js": (js, PLAYER_MODULE),
        f"{ENGINE}/Javascript/howler.js/howler.min.js": (js, HOWLER_JS),
        f"{BASE}/Languages/en/common.js": (js, json.dumps({"common": {"yes": "Yes"}})),
        f"{BASE}/Languages/en/player.js": (js, json.dumps({"player": {"press": "Press"}})),
        f"{BASE}/CSS/player.css": ("text/css; charset=utf-8", PLAYER_CSS),
        f"{BASE}/CSS/theme.css": ("text/css; charset=utf-8", THEME_CSS),
        f"{BASE}/trial.js.php?trial_id=1": (js, case_script(*first_case())),
        f"{BASE}/trial.js.php?trial_id=2": (js, case_script(*sequence_case(
            2, "Saga Part 1", "https://i.imgur.com/maya.png",
            next_text="To be continued at https://aaonline.fr/player.php?trial_id=3"))),
        f"{BASE}/trial.js.php?trial_id=3": (js, case_script(*sequence_case(
            3, "Saga Part 2", "https://i.imgur.com/maya2.png"))),
        f"{BASE}/trial.js.php?trial_id=4": (js, "var trial_information;\n"),
        f"{BASE}/trial.js.php?trial_id=5": (js, case_script(*locked_case())),
    }
    for url in CASE_ONE_ASSETS + LOCK_ASSETS + ["https://i.imgur.com/maya.png", "https://i.imgur.com/maya2.png",
                                                "https://i.imgur.com/edgeworth.png"]:
        routes[url] = fake_asset(url)
    routes["https://i.photobucket.com/albums/court.png"] = ("image/png", png_bytes())
    return FakeSession(routes)


@pytest.fixture
def site():
    return build_site()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(site, sleeps):
    return HttpClient(concurrency_limit=4, retry=RetryPolicy(max_attempts=3, base_delay=1.0, jitter=0),
                      session=site, sleep=sleeps.append)
