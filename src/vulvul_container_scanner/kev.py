import json
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, FrozenSet, Iterator, Optional
from urllib import error, request

from .errors import ExploitFeedError
from .models_scan import ExploitCacheEntry

CISA_KEV_URL = "https://www.cisa.gov/sites/default/files/feeds/known_exploited_vulnerabilities.json"
DEFAULT_TTL = 24 * 60 * 60.0


class _ReadWriteLock:
    """Many readers or one writer. Writers are preferred once waiting."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def fetch_kev_feed(url: str = CISA_KEV_URL, timeout: float = 30) -> bytes:
    req = request.Request(
        url,
        headers={"Accept": "application/json", "User-Agent": "vulvul-container-scanner"},
        method="GET",
    )
    try:
        with request.urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except error.HTTPError as exc:
        raise ExploitFeedError(f"KEV feed HTTP {exc.code}: {exc.reason}") from exc
    except (error.URLError, OSError) as exc:
        raise ExploitFeedError(f"KEV feed fetch failed: {exc}") from exc


def _normalize_id(identifier: str | None) -> str:
    return (identifier or "").strip().upper()


class ExploitCache:
    """
    CISA KEV (Known Exploited Vulnerabilities) カタログのプロセス内キャッシュ。
    起動時に 1 つ作り、enrich に参照渡しする。
    fetch / clock はテストで差し替え可能。
    """

    def __init__(
        self,
        fetch: Optional[Callable[[str], bytes]] = None,
        clock: Callable[[], float] = time.monotonic,
        ttl: float = DEFAULT_TTL,
        url: str = CISA_KEV_URL,
    ) -> None:
        self._fetch = fetch or fetch_kev_feed
        self._clock = clock
        self._ttl = ttl
        self._url = url

        self._lock = _ReadWriteLock()
        self._known: Optional[FrozenSet[str]] = None
        self._entries: Dict[str, ExploitCacheEntry] = {}
        self._last_refresh: Optional[float] = None

    def _is_fresh(self) -> bool:
        return (
            self._known is not None
            and self._last_refresh is not None
            and self._clock() - self._last_refresh < self._ttl
        )

    def ensure_fresh(self) -> None:
        """
        TTL 内なら何もしない。期限切れなら write lock 下で再確認してから取得する。
        取得・パース失敗時は既存データを残したまま ExploitFeedError を送出する。
        """
        with self._lock.read():
            if self._is_fresh():
                return

        with self._lock.write():
            if self._is_fresh():
                return
            try:
                raw = self._fetch(self._url)
            except ExploitFeedError:
                raise
            except Exception as exc:
                raise ExploitFeedError(f"KEV feed fetch failed: {exc}") from exc
            try:
                known, entries = parse_kev_feed(raw)
            except (TypeError, AttributeError, ValueError) as exc:
                raise ExploitFeedError(f"parse KEV feed: {exc}") from exc
            self._known = known
            self._entries = entries
            self._last_refresh = self._clock()

    def has_data(self) -> bool:
        with self._lock.read():
            return self._known is not None

    def is_known_exploited(self, identifier: str | None) -> bool:
        key = _normalize_id(identifier)
        if not key:
            return False
        with self._lock.read():
            return self._known is not None and key in self._known

    def get_detail(self, identifier: str | None) -> Optional[ExploitCacheEntry]:
        key = _normalize_id(identifier)
        with self._lock.read():
            return self._entries.get(key)


def _field(item: dict, key: str) -> str:
    value = item.get(key)
    return value.strip() if isinstance(value, str) else ""


def parse_kev_feed(raw: bytes | str) -> tuple[FrozenSet[str], Dict[str, ExploitCacheEntry]]:
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as exc:
        raise ExploitFeedError(f"parse KEV feed: {exc}") from exc

    vulns = data.get("vulnerabilities") if isinstance(data, dict) else None
    if not isinstance(vulns, list):
        raise ExploitFeedError("parse KEV feed: missing 'vulnerabilities' list")

    entries: Dict[str, ExploitCacheEntry] = {}
    for item in vulns:
        if not isinstance(item, dict):
            continue
        cve_id = _field(item, "cveID").upper()
        if not cve_id:
            continue
        entries[cve_id] = ExploitCacheEntry(
            short_description=_field(item, "shortDescription"),
            name=_field(item, "vulnerabilityName"),
            ransomware=_field(item, "knownRansomwareCampaignUse").lower() == "known",
        )
    return frozenset(entries), entries
