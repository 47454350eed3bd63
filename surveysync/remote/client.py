"""
ArcGIS feature-service client for the survey layers.

Endpoints used (relative to a layer URL such as .../FeatureServer/0):
  {layer}/query                                 — attribute queries, counts, distinct values
  {layer}/{objectid}/attachments                — attachment listing
  {layer}/{objectid}/attachments/{attachmentid} — attachment content
  {portal}/sharing/rest/generateToken           — token for secured services

No retries happen here; callers decide what a failure means.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence

import httpx

from surveysync.config.field_mapping import OBJECT_ID_FIELD
from surveysync.config.settings import settings

logger = logging.getLogger(__name__)

_TOKEN_REFRESH_MARGIN = 60.0  # seconds before expiry a token is renewed
_LAYER_SUFFIX = re.compile(r"/\d+/?$")


class RemoteServiceError(Exception):
    pass


@dataclass(frozen=True)
class AttachmentRef:
    id: int
    name: str
    content_type: Optional[str] = None
    size: Optional[int] = None

    @classmethod
    def from_info(cls, info: dict) -> "AttachmentRef":
        return cls(
            id=int(info["id"]),
            name=str(info.get("name") or f"{info['id']}.jpg"),
            content_type=info.get("contentType"),
            size=info.get("size"),
        )


def sql_literal(value: str) -> str:
    """Quote a string for a service WHERE clause."""
    return "'" + str(value).replace("'", "''") + "'"


def in_clause(field: str, values: Iterable[str]) -> str:
    return f"{field} IN ({', '.join(sql_literal(v) for v in values)})"


class LayerClient:
    """Stateless query interface over the survey feature service."""

    def __init__(
        self,
        http_client: Optional[httpx.Client] = None,
        layer_url: Optional[str] = None,
        layer_urls: Optional[dict[int, str]] = None,
        portal_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._http = http_client
        self._base_url = layer_url if layer_url is not None else settings.layer_url
        overrides = {1: settings.layer1_url, 2: settings.layer2_url}
        overrides.update(layer_urls or {})
        self._layer_urls = {k: v for k, v in overrides.items() if v}
        self._portal_url = (portal_url or settings.portal_url).rstrip("/")
        self._username = username if username is not None else settings.arcgis_user
        self._password = password if password is not None else settings.arcgis_password
        self._timeout = timeout or settings.http_timeout_seconds
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()
        self._warned_anonymous = False

    @property
    def http(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=self._timeout)
        return self._http

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None

    # ── URLs & auth ─────────────────────────────────────────────────

    def layer_url(self, layer: int) -> str:
        if layer in self._layer_urls:
            return self._layer_urls[layer].rstrip("/")
        base = (self._base_url or "").strip()
        if not base:
            raise RemoteServiceError("Remote layer URL is not configured (LAYER_URL)")
        if _LAYER_SUFFIX.search(base):
            return _LAYER_SUFFIX.sub(f"/{layer}", base)
        return f"{base.rstrip('/')}/{layer}"

    def token(self) -> Optional[str]:
        """Portal token, cached until shortly before it expires."""
        if not self._username or not self._password:
            if not self._warned_anonymous:
                logger.warning("ARCGIS_USER/ARCGIS_PASSWORD not set — using anonymous access")
                self._warned_anonymous = True
            return None

        with self._token_lock:
            if self._token and time.time() < self._token_expires_at - _TOKEN_REFRESH_MARGIN:
                return self._token

            data = self._request(
                "POST",
                f"{self._portal_url}/sharing/rest/generateToken",
                data={
                    "username": self._username,
                    "password": self._password,
                    "client": "referer",
                    "referer": self._portal_url,
                    "expiration": str(settings.token_expiration_minutes),
                    "f": "json",
                },
            )
            token = data.get("token")
            if not token:
                raise RemoteServiceError("Token generation returned no token")
            expires = data.get("expires")
            self._token = token
            self._token_expires_at = (
                expires / 1000 if expires else time.time() + settings.token_expiration_minutes * 60
            )
            logger.info("Generated portal token (expires in %.0fs)", self._token_expires_at - time.time())
            return token

    def _params(self, **params) -> dict:
        params.setdefault("f", "json")
        token = self.token()
        if token:
            params["token"] = token
        return params

    # ── Transport ───────────────────────────────────────────────────

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = self.http.request(method, url, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteServiceError(
                f"{method} {url} failed with HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RemoteServiceError(f"{method} {url} failed: {e}") from e
        return resp

    def _request(self, method: str, url: str, **kwargs) -> dict:
        resp = self._send(method, url, **kwargs)
        try:
            data = resp.json()
        except ValueError as e:
            raise RemoteServiceError(f"Invalid JSON from {url}") from e
        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            details = err.get("details") if isinstance(err, dict) else None
            if details:
                message = f"{message} ({'; '.join(str(d) for d in details)})"
            raise RemoteServiceError(message or "Remote service error")
        if not isinstance(data, dict):
            raise RemoteServiceError(f"Unexpected response from {url}")
        return data

    # ── Queries ─────────────────────────────────────────────────────

    def query(
        self,
        layer: int,
        where: str,
        fields: Sequence[str] = ("*",),
        offset: int = 0,
        page_size: Optional[int] = None,
    ) -> tuple[list[dict], bool]:
        """One page of feature attributes. has_more is False on a short page."""
        page_size = page_size or settings.page_size
        data = self._request(
            "GET",
            f"{self.layer_url(layer)}/query",
            params=self._params(
                where=where,
                outFields=",".join(fields),
                returnGeometry="false",
                orderByFields=f"{OBJECT_ID_FIELD} ASC",
                resultOffset=offset,
                resultRecordCount=page_size,
            ),
        )
        features = [f.get("attributes") or {} for f in data.get("features") or []]
        logger.debug("Layer %d query offset=%d returned %d features", layer, offset, len(features))
        return features, len(features) >= page_size

    def iter_pages(
        self,
        layer: int,
        where: str,
        fields: Sequence[str] = ("*",),
        page_size: Optional[int] = None,
    ) -> Iterator[list[dict]]:
        page_size = page_size or settings.page_size
        offset = 0
        while True:
            features, has_more = self.query(layer, where, fields, offset, page_size)
            if features:
                yield features
            if not has_more:
                return
            offset += len(features)

    def iter_features(self, layer: int, where: str, fields: Sequence[str] = ("*",), page_size: Optional[int] = None) -> Iterator[dict]:
        for page in self.iter_pages(layer, where, fields, page_size):
            yield from page

    def count(self, layer: int, where: str) -> int:
        data = self._request(
            "GET",
            f"{self.layer_url(layer)}/query",
            params=self._params(where=where, returnCountOnly="true"),
        )
        return int(data.get("count") or 0)

    def distinct_values(self, layer: int, field: str, search: str = "") -> list[str]:
        where = f"{field} IS NOT NULL"
        if search and search.strip():
            pattern = sql_literal(f"%{search.strip()}%")
            where = f"{where} AND UPPER({field}) LIKE UPPER({pattern})"
        data = self._request(
            "GET",
            f"{self.layer_url(layer)}/query",
            params=self._params(
                where=where,
                outFields=field,
                returnDistinctValues="true",
                returnGeometry="false",
                orderByFields=field,
            ),
        )
        values = set()
        for feature in data.get("features") or []:
            value = (feature.get("attributes") or {}).get(field)
            if value is not None:
                values.add(str(value))
        return sorted(values)

    # ── Attachments ─────────────────────────────────────────────────

    def list_attachments(self, layer: int, object_id: int) -> list[AttachmentRef]:
        data = self._request(
            "GET",
            f"{self.layer_url(layer)}/{object_id}/attachments",
            params=self._params(),
        )
        return [AttachmentRef.from_info(info) for info in data.get("attachmentInfos") or []]

    def fetch_attachment(self, layer: int, object_id: int, attachment_id: int) -> bytes:
        params = {}
        token = self.token()
        if token:
            params["token"] = token
        resp = self._send(
            "GET",
            f"{self.layer_url(layer)}/{object_id}/attachments/{attachment_id}",
            params=params,
        )
        # Failures come back as a JSON error body with HTTP 200
        if resp.headers.get("content-type", "").startswith(("application/json", "text/plain")):
            try:
                data = resp.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("error"):
                err = data["error"]
                raise RemoteServiceError(
                    err.get("message", "Attachment fetch failed") if isinstance(err, dict) else str(err)
                )
        return resp.content
