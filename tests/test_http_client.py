import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests
from urllib3.exceptions import MaxRetryError
from urllib3.util.retry import Retry

from browser_emulator import get_request_headers, sec_fetch_dest_for_url
from conftest import FakeSession
from download_config import RetryPolicy
from download_errors import NetworkError, RunCancelled
from http_client import HttpClient, HttpResponse

URL = "https://i.imgur.com/a.png"


def make_client(session, sleeps, **kwargs):
    kwargs.setdefault("retry", RetryPolicy(max_attempts=3, base_delay=1.0, jitter=0))
    return HttpClient(session=session, sleep=sleeps.append, **kwargs)


def test_transient_status_is_retried_with_backoff(sleeps):
    session = FakeSession({URL: ("image/png", b"png")})
    session.failures[URL] = [503, 429]
    client = make_client(session, sleeps)

    response = client.get(URL)

    assert response.content == b"png"
    assert session.count(URL) == 3
    assert sleeps == [0, 2.0]


def test_connection_errors_are_retried(sleeps):
    session = FakeSession({URL: ("image/png", b"png")})
    session.failures[URL] = [requests.exceptions.ConnectionError("reset"), requests.exceptions.Timeout("slow")]
    client = make_client(session, sleeps)

    assert client.get(URL).status_code == 200
    assert session.count(URL) == 3


def test_permanent_status_is_not_retried(sleeps):
    session = FakeSession()
    client = make_client(session, sleeps)

    with pytest.raises(NetworkError) as excinfo:
        client.get(URL)

    assert excinfo.value.status_code == 404
    assert not excinfo.value.transient
    assert session.count(URL) == 1
    assert sleeps == []


def test_retries_are_bounded(sleeps):
    session = FakeSession({URL: ("image/png", b"png")})
    session.failures[URL] = [500] * 10
    client = make_client(session, sleeps)

    with pytest.raises(NetworkError) as excinfo:
        client.get(URL)

    assert excinfo.value.status_code == 500
    assert excinfo.value.transient
    assert session.count(URL) == 3
    assert len(sleeps) == 2


def test_in_flight_requests_never_exceed_limit(sleeps):
    urls = [f"https://i.imgur.com/{i}.png" for i in range(20)]
    session = FakeSession({u: ("image/png", b"x") for u in urls}, delay=0.01)
    client = make_client(session, sleeps, concurrency_limit=3)

    with ThreadPoolExecutor(max_workers=10) as executor:
        list(executor.map(client.get, urls))

    assert client.request_count == 20
    assert 1 <= client.max_in_flight <= 3
    assert client.in_flight == 0


def test_insecure_http_handling(sleeps):
    session = FakeSession({URL: ("image/png", b"png")})
    client = make_client(session, sleeps)
    assert client.get("http://i.imgur.com/a.png").content == b"png"
    assert session.requests == [URL]

    strict = make_client(session, sleeps, http_handling="disallow")
    with pytest.raises(NetworkError):
        strict.get("http://i.imgur.com/a.png")
    assert session.requests == [URL]


def test_cancelled_client_does_not_send(sleeps):
    session = FakeSession({URL: ("image/png", b"png")})
    event = threading.Event()
    event.set()
    client = make_client(session, sleeps, cancel_event=event)

    with pytest.raises(RunCancelled):
        client.get(URL)
    assert session.requests == []


def test_response_text_uses_declared_charset_or_detection():
    declared = HttpResponse(URL, 200, {"Content-Type": "text/plain; charset=latin-1"}, "café".encode("latin-1"))
    assert declared.text == "café"
    assert declared.content_type == "text/plain"
    detected = HttpResponse(URL, 200, {}, "plain ascii".encode("ascii"))
    assert detected.text == "plain ascii"
    assert detected.content_type is None


def test_retry_policy_builds_urllib3_retry():
    retry = RetryPolicy(max_attempts=6, base_delay=1.0, max_delay=5.0, jitter=0).build_retry()

    assert isinstance(retry, Retry)
    assert retry.total == 5
    assert retry.is_retry("GET", 503)
    assert retry.is_retry("GET", 429)
    assert not retry.is_retry("GET", 404)
    assert not retry.is_retry("POST", 503)

    delays = []
    for _ in range(5):
        retry = retry.increment("GET", URL)
        delays.append(retry.get_backoff_time())
    assert delays == [0, 2.0, 4.0, 5.0, 5.0]
    with pytest.raises(MaxRetryError):
        retry.increment("GET", URL)


def test_retry_policy_jitter():
    retry = RetryPolicy(base_delay=1.0, jitter=0.5).build_retry()
    retry = retry.increment("GET", URL).increment("GET", URL)
    assert 2.0 <= retry.get_backoff_time() <= 2.5


def test_single_attempt_policy_never_retries(sleeps):
    session = FakeSession({URL: ("image/png", b"png")})
    session.failures[URL] = [503]
    client = make_client(session, sleeps, retry=RetryPolicy(max_attempts=1, jitter=0))

    with pytest.raises(NetworkError) as excinfo:
        client.get(URL)

    assert excinfo.value.transient
    assert session.count(URL) == 1
    assert sleeps == []


def test_request_headers():
    headers = get_request_headers("https://i.imgur.com/a.png", referring_page_url="https://aaonline.fr/player.php")
    assert headers["User-Agent"].startswith("curl/")
    assert headers["Sec-Fetch-Site"] == "cross-site"
    assert headers["Referer"] == "https://aaonline.fr/player.php"
    assert sec_fetch_dest_for_url("https://aaonline.fr/a.mp3") == "audio"
    assert sec_fetch_dest_for_url("https://aaonline.fr/trial.js.php?trial_id=1") == "script"
    own = get_request_headers("https://aaonline.fr/a.gif", referring_page_url="https://aaonline.fr/player.php")
    assert own["Sec-Fetch-Site"] == "same-origin"
    assert own["Accept"].startswith("image/")
