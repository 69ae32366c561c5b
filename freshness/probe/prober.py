"""HTTP freshness prober.

A probe sends the cheapest request that can tell whether a feed changed:

1. HEAD for hosts known to answer it reliably, otherwise a streamed GET whose
   body is never read. Stored validators are sent as conditional headers.
2. If the host rejects HEAD (405/501) the probe falls back to a plain GET.

Responses are classified as:

- 304 -> unchanged
- 2xx -> changed (response headers kept so the caller can store new validators)
- 4xx/5xx, DNS/connect/TLS failures, timeouts -> unreachable
- corrupt framing, redirect loops beyond the hop bound, unusable URLs,
  unexpected final status codes -> protocol_error

The prober holds no per-feed state and never retries; retry policy belongs to
the pipeline.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Optional
from urllib.parse import urlsplit

import httpx

from freshness.models.domain import CacheValidators, FreshnessOutcome, ProbeStatus
from freshness.settings import DEFAULT_USER_AGENT, Settings
from freshness.utils.logging import get_logger

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_REDIRECTS = 5
FEED_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/feed+json, "
    "application/xml;q=0.9, text/xml;q=0.9, */*;q=0.8"
)
HEAD_REJECTED = frozenset({405, 501})

logger = get_logger(__name__)


class FreshnessProber:
    """Classifies a feed endpoint as unchanged / changed / unreachable / protocol_error.

    The shared ``httpx.Client`` is configuration only (signature header,
    redirect bound, connection pool) and is safe to use from several workers.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        head_hosts: Iterable[str] = (),
        pool_size: int = 10,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if max_redirects < 0:
            raise ValueError("max_redirects must be >= 0")
        self._user_agent = user_agent
        self._timeout = float(timeout_seconds)
        self._max_redirects = max_redirects
        self._head_hosts: FrozenSet[str] = frozenset(h.lower() for h in head_hosts)
        self._owns_client = client is None
        if client is None:
            client = httpx.Client(
                headers={"User-Agent": user_agent, "Accept": FEED_ACCEPT},
                timeout=self._timeout,
                limits=httpx.Limits(max_connections=pool_size, max_keepalive_connections=pool_size),
            )
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "FreshnessProber":
        return cls(
            user_agent=settings.probe_user_agent,
            timeout_seconds=settings.probe_timeout_seconds,
            max_redirects=settings.probe_max_redirects,
            head_hosts=settings.probe_head_hosts,
            pool_size=settings.probe_workers,
        )

    @property
    def user_agent(self) -> str:
        return self._user_agent

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "FreshnessProber":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    def _request_headers(self, prior_validators: Optional[CacheValidators]) -> Dict[str, str]:
        headers = {"User-Agent": self._user_agent, "Accept": FEED_ACCEPT}
        if prior_validators is not None:
            headers.update(prior_validators.to_request_headers())
        return headers

    def _use_head(self, endpoint_url: str) -> bool:
        if not self._head_hosts:
            return False
        host = (urlsplit(endpoint_url).hostname or "").lower()
        return host in self._head_hosts

    def probe(
        self,
        endpoint_url: str,
        prior_validators: Optional[CacheValidators] = None,
        timeout: Optional[float] = None,
        *,
        candidate_id: Optional[int] = None,
    ) -> FreshnessOutcome:
        if not endpoint_url or not endpoint_url.strip():
            return FreshnessOutcome(
                candidate_id=candidate_id,
                status=ProbeStatus.PROTOCOL_ERROR,
                reason="empty endpoint url",
            )
        url = endpoint_url.strip()
        effective_timeout = self._timeout if timeout is None else float(timeout)
        if effective_timeout <= 0:
            raise ValueError("timeout must be > 0")
        headers = self._request_headers(prior_validators)

        try:
            if self._use_head(url):
                status_code, response_headers, final_url = self._send("HEAD", url, headers, effective_timeout)
                if status_code in HEAD_REJECTED:
                    logger.debug("probe.head_rejected", extra={"url": url, "status_code": status_code})
                    status_code, response_headers, final_url = self._send("GET", url, headers, effective_timeout)
            else:
                status_code, response_headers, final_url = self._send("GET", url, headers, effective_timeout)
        except httpx.TooManyRedirects as exc:
            return self._failure(candidate_id, ProbeStatus.PROTOCOL_ERROR, f"too many redirects: {exc}")
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            return self._failure(candidate_id, ProbeStatus.PROTOCOL_ERROR, f"bad url: {exc}")
        except (httpx.RemoteProtocolError, httpx.LocalProtocolError, httpx.DecodingError) as exc:
            return self._failure(candidate_id, ProbeStatus.PROTOCOL_ERROR, f"protocol error: {exc}")
        except httpx.TimeoutException as exc:
            return self._failure(candidate_id, ProbeStatus.UNREACHABLE, f"timeout: {exc.__class__.__name__}")
        except httpx.TransportError as exc:
            return self._failure(candidate_id, ProbeStatus.UNREACHABLE, f"network error: {exc}")

        return classify_response(candidate_id, status_code, response_headers, final_url)

    def _send(self, method: str, url: str, headers: Dict[str, str], timeout: float):
        # Redirects are followed here rather than by the client so that the hop
        # bound holds for injected clients too. Responses are streamed so that a
        # GET never downloads the feed body; only status and headers are used.
        request = self._client.build_request(method, url, headers=headers, timeout=timeout)
        hops = 0
        while True:
            response = self._client.send(request, stream=True, follow_redirects=False)
            try:
                if response.next_request is None:
                    return response.status_code, dict(response.headers.items()), str(response.url)
                request = response.next_request
            finally:
                response.close()
            hops += 1
            if hops > self._max_redirects:
                raise httpx.TooManyRedirects(f"exceeded {self._max_redirects} redirects", request=request)

    @staticmethod
    def _failure(candidate_id: Optional[int], status: ProbeStatus, reason: str) -> FreshnessOutcome:
        return FreshnessOutcome(candidate_id=candidate_id, status=status, reason=reason)


def classify_response(
    candidate_id: Optional[int],
    status_code: int,
    headers: Dict[str, str],
    final_url: Optional[str] = None,
) -> FreshnessOutcome:
    """Map a final HTTP status to a FreshnessOutcome."""
    if status_code == 304:
        return FreshnessOutcome(
            candidate_id=candidate_id,
            status=ProbeStatus.UNCHANGED,
            http_status_code=status_code,
            final_url=final_url,
        )
    if 200 <= status_code < 300:
        return FreshnessOutcome(
            candidate_id=candidate_id,
            status=ProbeStatus.CHANGED,
            http_status_code=status_code,
            observed_headers=headers,
            final_url=final_url,
        )
    if 400 <= status_code < 600:
        return FreshnessOutcome(
            candidate_id=candidate_id,
            status=ProbeStatus.UNREACHABLE,
            http_status_code=status_code,
            final_url=final_url,
            reason=f"http {status_code}",
        )
    # 1xx as final, 3xx without a usable Location, or non-standard codes
    return FreshnessOutcome(
        candidate_id=candidate_id,
        status=ProbeStatus.PROTOCOL_ERROR,
        http_status_code=status_code,
        final_url=final_url,
        reason=f"unexpected status {status_code}",
    )
