"""mtr_etl.report_fetcher

Single-shot HTTP download of report spreadsheets. No retries here: the
caller treats any failure as a failed fetch job.
"""

from __future__ import annotations

import logging

import requests
from requests.adapters import HTTPAdapter

from mtr_etl.shared import FetchError, FetchTimeoutError

log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "MTR-DataPipeline/1.0"


def build_session(
    user_agent: str = DEFAULT_USER_AGENT,
    max_connections: int = 10,
) -> requests.Session:
    """Session with a connection pool sized for the worker pool."""
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent})
    adapter = HTTPAdapter(pool_connections=max_connections, pool_maxsize=max_connections)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def fetch(session: requests.Session, url: str, timeout: float) -> bytes:
    """GET url and return the body.

    Raises:
        FetchTimeoutError: no response within timeout seconds.
        FetchError: transport failure or non-2xx status.
    """
    try:
        resp = session.get(url, timeout=timeout)
    except requests.Timeout as exc:
        log.error("HTTP timeout after %ss: %s", timeout, url)
        raise FetchTimeoutError(f"timeout after {timeout}s fetching {url}") from exc
    except requests.RequestException as exc:
        raise FetchError(f"network error fetching {url}: {exc}") from exc

    if not 200 <= resp.status_code < 300:
        raise FetchError(f"HTTP {resp.status_code} fetching {url}")
    return resp.content
