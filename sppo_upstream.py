# HTTP transport for the SPPO GPS feed.

from dataclasses import dataclass
import datetime
from email.utils import parsedate_to_datetime
import logging
import random
import time
from typing import Any, Dict, List, Optional

import requests
import urllib3

from sppo_errors import UpstreamError

log = logging.getLogger("sppo_upstream")

DEFAULT_API_URL = "https://dados.mobilidade.rio/gps/sppo"
USER_AGENT = "SMTR-Rio-API/2.0.0"


@dataclass
class UpstreamConfig:
    url: str = DEFAULT_API_URL
    timeout_sec: float = 30.0
    max_retries: int = 3
    verify_tls: bool = False
    backoff_base_sec: float = 0.5
    backoff_max_sec: float = 6.0


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    delta = parsed - datetime.datetime.now(datetime.timezone.utc)
    return max(0, int(delta.total_seconds()))


def compute_backoff(attempt: int, base: float, maximum: float) -> float:
    delay = min(maximum, base * (2**attempt))
    return delay * (0.7 + random.random() * 0.6)


class UpstreamClient:
    def __init__(self, config: UpstreamConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Accept-Encoding": "gzip, deflate",
                "User-Agent": USER_AGENT,
            }
        )
        if not config.verify_tls:
            # The SPPO endpoint has served broken certificate chains.
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def request_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        cfg = self.config
        attempt = 0
        while True:
            try:
                resp = self.session.get(
                    url,
                    params=params,
                    timeout=cfg.timeout_sec,
                    verify=cfg.verify_tls,
                )
            except requests.RequestException as exc:
                if attempt >= cfg.max_retries:
                    raise UpstreamError(504, "SPPO request failed") from exc
                log.warning("SPPO request failed (attempt %d): %s", attempt + 1, exc)
                time.sleep(compute_backoff(attempt, cfg.backoff_base_sec, cfg.backoff_max_sec))
                attempt += 1
                continue

            if resp.status_code == 429:
                if attempt >= cfg.max_retries:
                    raise UpstreamError(resp.status_code, "SPPO rate limited")
                retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                delay = retry_after if retry_after is not None else compute_backoff(
                    attempt, cfg.backoff_base_sec, cfg.backoff_max_sec
                )
                log.warning("SPPO rate limited, retrying in %ss", delay)
                time.sleep(delay)
                attempt += 1
                continue

            if 500 <= resp.status_code <= 599:
                if attempt >= cfg.max_retries:
                    raise UpstreamError(resp.status_code, "SPPO upstream error")
                log.warning("SPPO returned %d (attempt %d)", resp.status_code, attempt + 1)
                time.sleep(compute_backoff(attempt, cfg.backoff_base_sec, cfg.backoff_max_sec))
                attempt += 1
                continue

            if resp.status_code >= 400:
                raise UpstreamError(resp.status_code, "SPPO upstream error")

            try:
                return resp.json()
            except ValueError as exc:
                raise UpstreamError(502, "SPPO invalid JSON") from exc

    def fetch_records(self) -> List[Dict[str, Any]]:
        log.info("Requesting SPPO feed: %s", self.config.url)
        data = self.request_json(self.config.url)
        if not isinstance(data, list):
            raise UpstreamError(502, "SPPO returned a non-list payload")
        log.info("SPPO feed returned %d records", len(data))
        return data
