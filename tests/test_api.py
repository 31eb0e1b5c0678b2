import importlib
import sys
import time

from sppo_errors import UpstreamError


_ENV_KEYS = [
    "APP_ENV",
    "SPPO_API_URL",
    "SPPO_TIMEOUT",
    "SPPO_RETRY_ATTEMPTS",
    "CACHE_TTL",
    "CACHE_MAX_KEYS",
    "RATE_LIMIT_WINDOW_MS",
    "RATE_LIMIT_MAX_REQUESTS",
    "CORS_ALLOWED_ORIGINS",
    "TRUST_PROXY_HEADERS",
]


class FakeFeed:
    def __init__(self, records):
        self.records = records
        self.calls = 0
        self.error = None

    def fetch_records(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.records)


def bus(ordem, linha, lat, lon, speed="25"):
    return {
        "ordem": ordem,
        "linha": linha,
        "latitude": lat,
        "longitude": lon,
        "velocidade": speed,
        "datahora": str(int(time.time() * 1000)),
    }


FLEET = [
    bus("A1", "415", "-22,9068", "-43,1729"),
    bus("A2", "415", "-22,9070", "-43,1731"),
    bus("B1", "100", "-22,9700", "-43,1850"),
]


def load_module(monkeypatch, **env):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    sys.modules.pop("sppo_proxy", None)
    import sppo_proxy
    return importlib.reload(sppo_proxy)


def with_feed(monkeypatch, records=FLEET, **env):
    mod = load_module(monkeypatch, **env)
    feed = FakeFeed(records)
    monkeypatch.setattr(mod.service, "upstream", feed)
    return mod, feed


def test_all_buses(monkeypatch):
    mod, feed = with_feed(monkeypatch)
    client = mod.app.test_client()

    resp = client.get("/api/sppo")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["meta"]["total"] == 3
    assert data["meta"]["duration"].endswith("ms")
    assert data["data"][0]["latitude"] == -22.9068
    assert data["data"][0]["dataHora"].endswith("Z")

    client.get("/api/sppo")
    assert feed.calls == 1


def test_buses_by_line(monkeypatch):
    mod, _ = with_feed(monkeypatch)
    client = mod.app.test_client()

    resp = client.get("/api/sppo/linha/415")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["meta"]["linha"] == "415"
    assert [b["ordem"] for b in data["data"]] == ["A1", "A2"]


def test_unknown_line_is_404(monkeypatch):
    mod, _ = with_feed(monkeypatch)
    client = mod.app.test_client()

    resp = client.get("/api/sppo/linha/999")
    assert resp.status_code == 404
    assert resp.get_json()["error"]["code"] == "not_found"


def test_line_validation(monkeypatch):
    mod, feed = with_feed(monkeypatch)
    client = mod.app.test_client()

    resp = client.get("/api/sppo/linha/" + "9" * 21)
    assert resp.status_code == 400
    error = resp.get_json()["error"]
    assert error["code"] == "invalid_parameter"
    assert "details" in error
    assert feed.calls == 0


def test_buses_by_position(monkeypatch):
    mod, _ = with_feed(monkeypatch)
    client = mod.app.test_client()

    resp = client.get("/api/sppo/posicao?lat=-22,9068&lon=-43.1729&raio=0.5")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["meta"]["lat"] == -22.9068
    assert data["meta"]["raio"] == 0.5
    assert {b["ordem"] for b in data["data"]} == {"A1", "A2"}

    resp = client.get("/api/sppo/posicao?lat=-22.9068&lon=-43.1729")
    assert resp.get_json()["meta"]["raio"] == 1.0


def test_position_validation(monkeypatch):
    mod, _ = with_feed(monkeypatch)
    client = mod.app.test_client()

    for query in (
        "lat=100&lon=-43.1",
        "lat=-22.9&lon=-181",
        "lat=-22.9&lon=-43.1&raio=60",
        "lat=-22.9&lon=-43.1&raio=0.05",
        "lon=-43.1",
        "lat=abc&lon=-43.1",
    ):
        resp = client.get(f"/api/sppo/posicao?{query}")
        assert resp.status_code == 400, query
        assert resp.get_json()["error"]["code"] == "invalid_parameter"


def test_empty_area_is_404(monkeypatch):
    mod, _ = with_feed(monkeypatch)
    client = mod.app.test_client()
    resp = client.get("/api/sppo/posicao?lat=-23.5&lon=-46.6&raio=2")
    assert resp.status_code == 404


def test_stats(monkeypatch):
    mod, _ = with_feed(monkeypatch)
    client = mod.app.test_client()

    resp = client.get("/api/sppo/stats")
    assert resp.status_code == 200
    stats = resp.get_json()["data"]
    assert stats["total"] == 3
    assert stats["byLine"] == {"415": 2, "100": 1}
    assert stats["avgSpeed"] == 25.0


def test_clear_cache_triggers_fresh_fetch(monkeypatch):
    mod, feed = with_feed(monkeypatch)
    client = mod.app.test_client()

    client.get("/api/sppo")
    resp = client.post("/api/sppo/cache/clear")
    assert resp.status_code == 200
    assert "message" in resp.get_json()

    client.get("/api/sppo")
    assert feed.calls == 2


def test_cache_stats(monkeypatch):
    mod, _ = with_feed(monkeypatch)
    client = mod.app.test_client()
    client.get("/api/sppo")

    data = client.get("/api/sppo/cache/stats").get_json()["data"]
    assert set(data["caches"]) == {"general", "line", "position"}
    assert data["caches"]["general"]["keys"] == 2
    assert data["lineIndex"]["lines"] == 2


def test_upstream_error(monkeypatch):
    mod, feed = with_feed(monkeypatch, SPPO_API_URL="https://secret-feed.test/gps")
    feed.error = UpstreamError(503, "SPPO upstream error")
    client = mod.app.test_client()

    resp = client.get("/api/sppo")
    assert resp.status_code == 500
    assert resp.get_json()["error"]["code"] == "upstream_error"
    assert "secret-feed" not in resp.get_data(as_text=True)
    assert resp.headers["Cache-Control"] == "no-store"


def test_rate_limit(monkeypatch):
    mod, _ = with_feed(monkeypatch, RATE_LIMIT_MAX_REQUESTS="1")
    client = mod.app.test_client()
    assert client.get("/api/sppo").status_code == 200

    resp = client.get("/api/sppo")
    assert resp.status_code == 429
    assert resp.get_json()["error"]["code"] == "rate_limited"
    assert "Retry-After" in resp.headers


def test_cors_allow_deny(monkeypatch):
    mod, _ = with_feed(monkeypatch, CORS_ALLOWED_ORIGINS="http://allowed.test")
    client = mod.app.test_client()

    resp = client.get("/api/sppo", headers={"Origin": "http://allowed.test"})
    assert resp.headers.get("Access-Control-Allow-Origin") == "http://allowed.test"

    resp = client.get("/api/sppo", headers={"Origin": "http://blocked.test"})
    assert "Access-Control-Allow-Origin" not in resp.headers


def test_unknown_route(monkeypatch):
    mod = load_module(monkeypatch)
    resp = mod.app.test_client().get("/api/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"]["code"] == "route_not_found"


def test_health_and_index(monkeypatch):
    mod = load_module(monkeypatch)
    client = mod.app.test_client()

    health = client.get("/health").get_json()
    assert health["status"] == "OK"
    assert health["version"] == mod.VERSION

    index = client.get("/api").get_json()
    assert index["endpoints"]["byLine"] == "/api/sppo/linha/:linha"


def test_env_config(monkeypatch):
    mod = load_module(monkeypatch, SPPO_TIMEOUT="5000", CACHE_MAX_KEYS="oops")
    assert mod.service.upstream.config.timeout_sec == 5.0
    assert mod.CACHE_MAX_KEYS == 1000
    assert mod.service.cache.namespace("line").max_keys == 1000


def test_rate_limiter_forgets_idle_clients(monkeypatch):
    mod = load_module(monkeypatch)
    now = [100.0]
    monkeypatch.setattr(mod.time, "monotonic", lambda: now[0])
    limiter = mod.PerKeyLimiter(5, 10)

    assert limiter.allow("10.0.0.1") == (True, 0)
    assert limiter.allow("10.0.0.2") == (True, 0)

    now[0] += 11
    assert limiter.allow("10.0.0.3") == (True, 0)
    assert set(limiter._events) == {"10.0.0.3"}
