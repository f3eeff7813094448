"""Client for the Naam Jaap web service, used as the chanting client's document store."""

import logging
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


class HttpDocumentStore:
    """Counter, daily-stat and history calls against the web service.

    Methods raise ``requests.RequestException`` on failure; the tally
    store decides what to do about it.
    """

    def __init__(self, base_url, session=None, timeout=DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, path):
        return f"{self.base_url}{path}"

    def _request(self, method, path, **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        r = self.session.request(method, self._url(path), **kwargs)
        r.raise_for_status()
        return r.json()

    def login(self, username, password):
        return self._request("POST", "/api/login", json={"username": username, "password": password})

    def read_counter(self):
        data = self._request("GET", "/api/counter")
        return int(data.get("count", 0)), int(data.get("malaCount", 0))

    def todays_japa(self):
        return int(self._request("GET", "/api/counter").get("todaysJapa", 0))

    def write_counter(self, count, mala_count):
        self._request("PUT", "/api/counter", json={"count": count, "malaCount": mala_count})

    def increment_daily(self, day=None, chants=1, malas=0):
        # no day: the service files it under its own today
        path = f"/api/daily_stats/{day}/increment" if day else "/api/daily_stats/increment"
        self._request("POST", path, json={"chants": chants, "malas": malas})

    def append_session(self, start_time, end_time, total_count, mala_count, chant_text):
        return self._request("POST", "/api/sessions", json={
            "startTime": start_time.isoformat(),
            "endTime": end_time.isoformat(),
            "totalCount": total_count,
            "malaCount": mala_count,
            "chantText": chant_text,
        })

    def preferences(self):
        return self._request("GET", "/api/preferences")

    def download(self, url, dest_dir):
        """Fetch a clip the service stores for this user into ``dest_dir``."""
        full = url if url.startswith("http") else self._url(url)
        r = self.session.get(full, timeout=max(self.timeout, 60))
        r.raise_for_status()
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        path = dest_dir / unquote(Path(urlparse(full).path).name)
        path.write_bytes(r.content)
        return path

    def suggest_voice(self, desired_style):
        """Returns the service's ``{"success": ..., ...}`` dict, even on HTTP errors."""
        try:
            r = self.session.post(self._url("/api/voice"), json={"desiredStyle": desired_style},
                                  timeout=max(self.timeout, 60))
            return r.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Voice suggestion request failed: %s", exc)
            return {"success": False, "error": f"Failed to generate voice style: {exc}"}
