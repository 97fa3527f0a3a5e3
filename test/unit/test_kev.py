import json
import threading
import time

import pytest

from vulvul_container_scanner import kev
from vulvul_container_scanner.errors import ExploitFeedError
from vulvul_container_scanner.kev import ExploitCache, parse_kev_feed

FEED = {
    "title": "CISA Catalog of Known Exploited Vulnerabilities",
    "vulnerabilities": [
        {
            "cveID": "CVE-2021-44228",
            "vulnerabilityName": "Apache Log4j2 Remote Code Execution Vulnerability",
            "shortDescription": "Apache Log4j2 contains a vulnerability where JNDI features do not protect against attacker-controlled JNDI-related endpoints.",
            "knownRansomwareCampaignUse": "Known",
        },
        {
            "cveID": " cve-2023-4863 ",
            "vulnerabilityName": "Google Chromium WebP Heap-Based Buffer Overflow",
            "shortDescription": "",
            "knownRansomwareCampaignUse": "Unknown",
        },
        {"cveID": "", "shortDescription": "skipped"},
    ],
}


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _CountingFetch:
    def __init__(self, payload=FEED, delay: float = 0.0) -> None:
        self.payload = payload
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, url: str) -> bytes:
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if isinstance(self.payload, Exception):
            raise self.payload
        return json.dumps(self.payload).encode("utf-8")


def test_parse_kev_feed_normalizes_ids_and_flags():
    known, entries = parse_kev_feed(json.dumps(FEED))

    assert known == {"CVE-2021-44228", "CVE-2023-4863"}
    log4j = entries["CVE-2021-44228"]
    assert log4j.name.startswith("Apache Log4j2")
    assert log4j.ransomware is True
    assert entries["CVE-2023-4863"].ransomware is False


@pytest.mark.parametrize("raw", ["<html>", '{"vulnerabilities": 3}', "[]"])
def test_parse_kev_feed_rejects_bad_documents(raw):
    with pytest.raises(ExploitFeedError):
        parse_kev_feed(raw)


def test_lookup_is_case_insensitive_and_trimmed():
    cache = ExploitCache(fetch=_CountingFetch())
    cache.ensure_fresh()

    assert cache.is_known_exploited("cve-2021-44228")
    assert cache.is_known_exploited("  CVE-2023-4863\n")
    assert not cache.is_known_exploited("CVE-2000-0001")
    assert not cache.is_known_exploited("")
    assert cache.get_detail(" cve-2021-44228 ").ransomware is True
    assert cache.get_detail("CVE-2000-0001") is None


def test_ensure_fresh_respects_ttl():
    clock = _Clock()
    fetch = _CountingFetch()
    cache = ExploitCache(fetch=fetch, clock=clock, ttl=100)

    cache.ensure_fresh()
    clock.now += 99
    cache.ensure_fresh()
    assert fetch.calls == 1

    clock.now += 2
    cache.ensure_fresh()
    assert fetch.calls == 2


def test_failed_refresh_keeps_stale_data():
    clock = _Clock()
    fetch = _CountingFetch()
    cache = ExploitCache(fetch=fetch, clock=clock, ttl=10)
    cache.ensure_fresh()

    clock.now += 60
    fetch.payload = ExploitFeedError("HTTP 503")
    with pytest.raises(ExploitFeedError):
        cache.ensure_fresh()

    assert cache.has_data()
    assert cache.is_known_exploited("CVE-2021-44228")


def test_failed_first_fetch_leaves_cache_empty():
    cache = ExploitCache(fetch=_CountingFetch(payload=OSError("network down")))

    with pytest.raises(ExploitFeedError, match="network down"):
        cache.ensure_fresh()
    assert not cache.has_data()
    assert not cache.is_known_exploited("CVE-2021-44228")


def test_refresh_replaces_entries_wholesale():
    clock = _Clock()
    fetch = _CountingFetch()
    cache = ExploitCache(fetch=fetch, clock=clock, ttl=10)
    cache.ensure_fresh()

    fetch.payload = {"vulnerabilities": [{"cveID": "CVE-2024-3400"}]}
    clock.now += 11
    cache.ensure_fresh()

    assert cache.is_known_exploited("CVE-2024-3400")
    assert not cache.is_known_exploited("CVE-2021-44228")


def test_concurrent_refresh_fetches_once():
    fetch = _CountingFetch(delay=0.1)
    cache = ExploitCache(fetch=fetch)
    barrier = threading.Barrier(8)
    errors = []

    def worker():
        barrier.wait()
        try:
            cache.ensure_fresh()
        except Exception as exc:  # pragma: no cover - surfaced by assertion
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert fetch.calls == 1
    assert cache.is_known_exploited("CVE-2021-44228")


def test_parse_kev_feed_tolerates_non_string_fields():
    raw = json.dumps(
        {
            "vulnerabilities": [
                {
                    "cveID": "CVE-2021-44228",
                    "shortDescription": 42,
                    "vulnerabilityName": None,
                    "knownRansomwareCampaignUse": 1,
                },
                {"cveID": 12345},
                "not-an-object",
            ]
        }
    )

    known, entries = parse_kev_feed(raw)

    assert known == {"CVE-2021-44228"}
    detail = entries["CVE-2021-44228"]
    assert detail.short_description == ""
    assert detail.name == ""
    assert detail.ransomware is False


def test_non_document_payload_is_feed_error():
    cache = ExploitCache(fetch=lambda url: None)

    with pytest.raises(ExploitFeedError):
        cache.ensure_fresh()
    assert not cache.has_data()


def test_default_fetch_wraps_url_errors(monkeypatch):
    def fake_urlopen(req, timeout=None):
        raise kev.error.URLError("no route to host")

    monkeypatch.setattr(kev.request, "urlopen", fake_urlopen)

    with pytest.raises(ExploitFeedError, match="no route to host"):
        kev.fetch_kev_feed("https://example.invalid/kev.json")
