import re
import threading
from pathlib import Path
from typing import Optional

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from surveysync.remote.client import LayerClient
from surveysync.storage.database import init_db, make_engine
from surveysync.sync.attachments import AttachmentMaterializer
from surveysync.sync.orchestrator import SyncOrchestrator
from surveysync.sync.store import CacheStore

LAYER_URL = "https://gis.example.test/arcgis/rest/services/Supervision/FeatureServer/0"
PORTAL_URL = "https://portal.example.test"
SUBJECT = "CA-001"

# Epoch milliseconds (UTC)
JAN_01 = 1704103200000   # 2024-01-01 10:00
FEB_15 = 1707998400000   # 2024-02-15 12:00
MAR_10 = 1710057600000   # 2024-03-10 08:00

_STRING = r"'((?:[^']|'')*)'"


def _unquote(value: str) -> str:
    return value.replace("''", "'")


class FakeFeatureService:
    """In-memory stand-in for the three survey layers and their attachments."""

    def __init__(self):
        self.layers: dict[int, list[dict]] = {0: [], 1: [], 2: []}
        self.attachments: dict[tuple[int, int], list[dict]] = {}
        self.failing_downloads: set[tuple[int, int, int]] = set()
        self.failing_layers: set[int] = set()
        self.token_calls = 0
        self.requests: list[httpx.Request] = []
        self.max_page: Optional[int] = None   # server-side cap on rows per page
        self._pause: Optional[tuple] = None
        self._pause_lock = threading.Lock()

    # ── Seeding ─────────────────────────────────────────────────────

    def add_parent(self, oid: int, gid: str, ca=SUBJECT, otro_ca=None, **attrs) -> dict:
        row = {"OBJECTID": oid, "GLOBALID": gid, "CA": ca, "OTRO_CA": otro_ca, **attrs}
        self.layers[0].append(row)
        return row

    def add_description(self, oid: int, parent_gid: str, text: str) -> dict:
        row = {"OBJECTID": oid, "GUID": parent_gid, "DESCRIP_1": text}
        self.layers[1].append(row)
        return row

    def add_fact(self, oid: int, parent_gid: str, hecho: str, descrip: str = None) -> dict:
        row = {"OBJECTID": oid, "GUID": parent_gid, "HECHO_DETEC_1": hecho, "DESCRIP_2": descrip}
        self.layers[2].append(row)
        return row

    def add_attachment(self, layer: int, oid: int, aid: int, name: str, content: bytes = None) -> None:
        content = content if content is not None else f"image-{layer}-{oid}-{aid}".encode()
        self.attachments.setdefault((layer, oid), []).append(
            {"id": aid, "name": name, "contentType": "image/jpeg", "size": len(content), "content": content}
        )

    def remove_parent(self, gid: str) -> None:
        self.layers[0] = [r for r in self.layers[0] if r["GLOBALID"] != gid]

    def parent(self, gid: str) -> dict:
        return next(r for r in self.layers[0] if r["GLOBALID"] == gid)

    # ── Request inspection ──────────────────────────────────────────

    def downloads(self) -> list[httpx.Request]:
        return [r for r in self.requests if re.search(r"/attachments/\d+$", r.url.path)]

    def child_queries(self) -> list[str]:
        return [
            r.url.params["where"] for r in self.requests
            if r.url.path.endswith(("/1/query", "/2/query")) and "where" in r.url.params
        ]

    def reset_requests(self) -> None:
        self.requests.clear()

    def pause_on(self, predicate) -> tuple[threading.Event, threading.Event]:
        """Block the first request matching predicate until released. Returns (reached, release)."""
        reached, release = threading.Event(), threading.Event()
        self._pause = (predicate, reached, release)
        return reached, release

    def _take_pause(self, request: httpx.Request):
        with self._pause_lock:
            if self._pause is None or not self._pause[0](request):
                return None
            _, reached, release = self._pause
            self._pause = None
            return reached, release

    # ── Transport ───────────────────────────────────────────────────

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        pause = self._take_pause(request)
        if pause is not None:
            reached, release = pause
            reached.set()
            assert release.wait(10)
        path = request.url.path

        if path.endswith("/sharing/rest/generateToken"):
            self.token_calls += 1
            return httpx.Response(200, json={"token": f"tok-{self.token_calls}", "expires": 32503680000000})

        parts = path.strip("/").split("/")
        layer = int(parts[parts.index("FeatureServer") + 1])
        rest = parts[parts.index("FeatureServer") + 2:]

        if layer in self.failing_layers:
            return httpx.Response(200, json={"error": {"code": 500, "message": "Layer unavailable"}})
        if rest == ["query"]:
            return self._query(layer, request.url.params)
        if len(rest) == 2 and rest[1] == "attachments":
            infos = [
                {k: v for k, v in a.items() if k != "content"}
                for a in self.attachments.get((layer, int(rest[0])), [])
            ]
            return httpx.Response(200, json={"attachmentInfos": infos})
        if len(rest) == 3 and rest[1] == "attachments":
            oid, aid = int(rest[0]), int(rest[2])
            if (layer, oid, aid) in self.failing_downloads:
                return httpx.Response(200, json={"error": {"code": 404, "message": "Attachment not found"}})
            for a in self.attachments.get((layer, oid), []):
                if a["id"] == aid:
                    return httpx.Response(200, content=a["content"], headers={"content-type": "image/jpeg"})
            return httpx.Response(404)
        return httpx.Response(404)

    def _query(self, layer: int, params) -> httpx.Response:
        rows = [r for r in self.layers[layer] if self._matches(r, params.get("where", "1=1"))]
        rows.sort(key=lambda r: r["OBJECTID"])

        if params.get("returnCountOnly") == "true":
            return httpx.Response(200, json={"count": len(rows)})

        if params.get("returnDistinctValues") == "true":
            field = params["outFields"]
            values = sorted({r[field] for r in rows if r.get(field) is not None})
            return httpx.Response(200, json={"features": [{"attributes": {field: v}} for v in values]})

        offset = int(params.get("resultOffset", 0))
        count = int(params.get("resultRecordCount", 1000))
        if self.max_page is not None:
            count = min(count, self.max_page)
        page = rows[offset:offset + count]
        return httpx.Response(200, json={"features": [{"attributes": dict(r)} for r in page]})

    @staticmethod
    def _matches(row: dict, where: str) -> bool:
        if where == "1=1":
            return True
        m = re.fullmatch(rf"(\w+) = {_STRING} OR (\w+) = {_STRING}", where)
        if m:
            return row.get(m[1]) == _unquote(m[2]) or row.get(m[3]) == _unquote(m[4])
        m = re.fullmatch(r"(\w+) IN \((.*)\)", where)
        if m:
            values = [_unquote(v) for v in re.findall(_STRING, m[2])]
            return str(row.get(m[1])) in values
        m = re.fullmatch(rf"(\w+) IS NOT NULL(?: AND UPPER\(\w+\) LIKE UPPER\({_STRING}\))?", where)
        if m:
            value = row.get(m[1])
            needle = _unquote(m[2] or "").strip("%").upper()
            return value is not None and needle in str(value).upper()
        raise AssertionError(f"Unexpected where clause: {where}")


def seed_scenario(fake: FakeFeatureService) -> None:
    """Three parents of one subject whose children carry five attachments."""
    fake.add_parent(1, "{AAAA0001-0000-0000-0000-000000000001}", FECHA_HORA=JAN_01,
                    SUPERVISOR="Ana Torres", COMPONENTE="Agua", ACTIVIDAD="Monitoreo")
    fake.add_parent(2, "{aaaa0002-0000-0000-0000-000000000002}", FECHA_HORA=FEB_15,
                    SUPERVISOR="Luis Rojas", COMPONENTE="Suelo", ACTIVIDAD="Inspeccion")
    fake.add_parent(3, "{AAAA0003-0000-0000-0000-000000000003}", FECHA_HORA=MAR_10,
                    SUPERVISOR="ana torres", COMPONENTE="Aire", ACTIVIDAD="Monitoreo")

    fake.add_description(11, "{AAAA0001-0000-0000-0000-000000000001}", "Punto de vertimiento")
    fake.add_description(12, "{aaaa0002-0000-0000-0000-000000000002}", "Suelo removido")
    fake.add_fact(21, "{AAAA0001-0000-0000-0000-000000000001}", "Derrame", "Mancha de aceite")
    fake.add_fact(23, "{AAAA0003-0000-0000-0000-000000000003}", "Emision", "Humo visible")

    fake.add_attachment(1, 11, 1, "foto1.jpg")
    fake.add_attachment(1, 11, 2, "foto2.jpg")
    fake.add_attachment(2, 21, 3, "derrame.jpg")
    fake.add_attachment(1, 12, 4, "suelo.jpg")
    fake.add_attachment(2, 23, 5, "humo.jpg")


GID_1 = "AAAA0001-0000-0000-0000-000000000001"
GID_2 = "AAAA0002-0000-0000-0000-000000000002"
GID_3 = "AAAA0003-0000-0000-0000-000000000003"


@pytest.fixture
def session_factory(tmp_path: Path):
    engine = make_engine(f"sqlite:///{tmp_path / 'cache.db'}", busy_timeout=2.0)
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def fake() -> FakeFeatureService:
    return FakeFeatureService()


@pytest.fixture
def client(fake: FakeFeatureService):
    http = httpx.Client(transport=httpx.MockTransport(fake.handler))
    layer_client = LayerClient(
        http_client=http,
        layer_url=LAYER_URL,
        layer_urls={1: "", 2: ""},
        portal_url=PORTAL_URL,
        username="",
        password="",
    )
    yield layer_client
    layer_client.close()


@pytest.fixture
def photos_dir(tmp_path: Path) -> Path:
    path = tmp_path / "photos"
    path.mkdir()
    return path


@pytest.fixture
def make_store(session_factory):
    def build(freshness_minutes: float = 5.0) -> CacheStore:
        return CacheStore(session_factory, freshness_minutes=freshness_minutes)
    return build


@pytest.fixture
def store(make_store) -> CacheStore:
    return make_store()


@pytest.fixture
def make_orchestrator(client, make_store, photos_dir):
    def build(freshness_minutes: float = 5.0, page_size: int = 2) -> SyncOrchestrator:
        cache = make_store(freshness_minutes)
        materializer = AttachmentMaterializer(client, cache, photos_dir=photos_dir, workers=2)
        return SyncOrchestrator(client, cache, materializer, page_size=page_size)
    return build


@pytest.fixture
def orchestrator(make_orchestrator) -> SyncOrchestrator:
    return make_orchestrator()
