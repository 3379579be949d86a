"""Integration tests for seedream_relay.api.main — FastAPI endpoints.

All tests use the FastAPI TestClient with an ``httpx.MockTransport`` standing
in for Replicate, so no network access occurs.  Tests cover every endpoint:

- ``GET /health`` — credential presence and retry policy.
- ``POST /api/generate`` — single and batch generation, validation, errors.
- ``GET /api/predictions/{id}`` — status passthrough.
- ``POST /api/upload`` — data URL ingestion and verification.
- ``GET /uploads/{name}`` — serving stored uploads.
- ``GET /debug/uploads`` — debug listing.
- ``GET /{path}`` — static files and SPA fallback.
"""

from __future__ import annotations

import base64

import httpx
import pytest
from fastapi.testclient import TestClient

from seedream_relay.api.main import create_app

DIRECT_PATH = "/v1/models/bytedance/seedream-4/predictions"
MODEL_PATH = "/v1/models/bytedance/seedream-4"
VERSIONED_PATH = "/v1/predictions"

PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
PNG_DATA_URL = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()


@pytest.fixture
def no_token_client(make_client, test_config):
    return make_client(test_config.model_copy(update={"replicate_api_token": None}))


# ---------------------------------------------------------------------------
# Health endpoint tests.
# ---------------------------------------------------------------------------


class TestHealth:
    """Test GET /health."""

    def test_health_with_token(self, test_client):
        resp = test_client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "hasToken": True, "timeoutMs": 5_000, "maxRetries": 2}

    def test_health_without_token(self, no_token_client):
        resp = no_token_client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["hasToken"] is False

    def test_health_never_leaks_token(self, test_client):
        assert "r8_test_token" not in test_client.get("/health").text


# ---------------------------------------------------------------------------
# Generation endpoint tests.
# ---------------------------------------------------------------------------


class TestGenerate:
    """Test POST /api/generate."""

    def test_single_mode(self, test_client, upstream, prediction_doc):
        upstream.on(
            "POST",
            DIRECT_PATH,
            (201, prediction_doc("p1", "succeeded", {"images": ["https://out/1.png"]})),
        )
        resp = test_client.post("/api/generate", json={"prompt": "a red fox"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["mode"] == "single"
        assert data["id"] == "p1"
        assert data["status"] == "succeeded"
        assert data["output"] == ["https://out/1.png"]
        assert data["getUrl"].endswith("/predictions/p1")
        assert data["webUrl"] == "https://replicate.com/p/p1"

    def test_batch_mode(self, test_client, upstream, prediction_doc):
        upstream.on(
            "POST",
            DIRECT_PATH,
            (201, prediction_doc("p1")),
            (201, prediction_doc("p2")),
            (201, prediction_doc("p3")),
        )
        resp = test_client.post("/api/generate", json={"prompt": "a red fox", "numImages": 3})

        assert resp.status_code == 200
        data = resp.json()
        assert data["mode"] == "batch"
        assert data["count"] == 3
        assert len(data["items"]) == 3
        assert all(item["id"] for item in data["items"])
        assert isinstance(data["tookMs"], int)
        assert len(upstream.calls("POST", DIRECT_PATH)) == 3

    @pytest.mark.parametrize(("num_images", "expected"), [(0, 1), (5, 4), ("abc", 1), (2, 2)])
    def test_num_images_clamped(self, test_client, upstream, prediction_doc, num_images, expected):
        upstream.on("POST", DIRECT_PATH, (201, prediction_doc()))
        resp = test_client.post("/api/generate", json={"prompt": "a fox", "numImages": num_images})

        assert resp.status_code == 200
        assert len(upstream.calls("POST", DIRECT_PATH)) == expected
        data = resp.json()
        if expected == 1:
            assert data["mode"] == "single"
        else:
            assert data["count"] == expected

    @pytest.mark.parametrize("body", [{}, {"prompt": ""}, {"prompt": "   "}, {"prompt": None}])
    def test_blank_prompt_400_without_upstream_calls(self, test_client, upstream, body):
        resp = test_client.post("/api/generate", json=body)
        assert resp.status_code == 400
        assert "prompt" in resp.json()["error"]
        assert upstream.requests == []

    def test_blank_prompt_checked_before_token(self, no_token_client):
        resp = no_token_client.post("/api/generate", json={"prompt": " "})
        assert resp.status_code == 400

    def test_missing_token_500(self, no_token_client, upstream):
        resp = no_token_client.post("/api/generate", json={"prompt": "a fox"})
        assert resp.status_code == 500
        assert "REPLICATE_API_TOKEN" in resp.json()["error"]
        assert upstream.requests == []

    def test_reference_image_and_aspect_forwarded(self, test_client, upstream, prediction_doc):
        upstream.on("POST", DIRECT_PATH, (201, prediction_doc()))
        test_client.post(
            "/api/generate",
            json={"prompt": "a fox", "imageUrl": "https://relay/uploads/a.png"},
        )
        sent = upstream.calls("POST", DIRECT_PATH)[0]
        assert b'"image_input":["https://relay/uploads/a.png"]' in sent.content.replace(b" ", b"")
        assert b"match_input_image" in sent.content

    def test_fallback_path_used(self, test_client, upstream, prediction_doc):
        upstream.on("POST", DIRECT_PATH, (404, {"detail": "not found"}))
        upstream.on("GET", MODEL_PATH, (200, {"latest_version": {"id": "v9"}}))
        upstream.on("POST", VERSIONED_PATH, (201, prediction_doc("pv")))

        resp = test_client.post("/api/generate", json={"prompt": "a fox"})
        assert resp.status_code == 200
        assert resp.json()["id"] == "pv"

    def test_upstream_terminal_error_502(self, test_client, upstream):
        upstream.on("POST", DIRECT_PATH, (422, {"detail": "prompt flagged"}))
        resp = test_client.post("/api/generate", json={"prompt": "a fox"})

        assert resp.status_code == 502
        error = resp.json()["error"]
        assert "422" in error
        assert "prompt flagged" in error
        assert "r8_test_token" not in error

    def test_upstream_transient_exhaustion_502(self, test_client, upstream):
        upstream.on("POST", DIRECT_PATH, (503, "overloaded"))
        resp = test_client.post("/api/generate", json={"prompt": "a fox"})

        assert resp.status_code == 502
        assert "official-predict" in resp.json()["error"]
        # max_retries=2 in the test configuration.
        assert len(upstream.calls("POST", DIRECT_PATH)) == 3

    def test_batch_fails_when_one_replica_fails(self, test_client, upstream, prediction_doc):
        upstream.on(
            "POST",
            DIRECT_PATH,
            (201, prediction_doc("p1")),
            (422, {"detail": "bad"}),
            (201, prediction_doc("p3")),
        )
        resp = test_client.post("/api/generate", json={"prompt": "a fox", "numImages": 3})
        assert resp.status_code == 502
        assert "error" in resp.json()

    def test_invalid_body_type_400(self, test_client):
        resp = test_client.post("/api/generate", json={"prompt": ["a", "list"]})
        assert resp.status_code == 400
        assert "error" in resp.json()


# ---------------------------------------------------------------------------
# Prediction status endpoint tests.
# ---------------------------------------------------------------------------


class TestPredictionStatus:
    """Test GET /api/predictions/{id}."""

    def test_passthrough(self, test_client, upstream, prediction_doc):
        document = prediction_doc("abc", "succeeded", ["https://out/1.png"])
        upstream.on("GET", "/v1/predictions/abc", (200, document))

        resp = test_client.get("/api/predictions/abc")
        assert resp.status_code == 200
        assert resp.json() == document

    def test_upstream_failure_502(self, test_client, upstream):
        upstream.on("GET", "/v1/predictions/gone", (404, {"detail": "Not found."}))
        resp = test_client.get("/api/predictions/gone")
        assert resp.status_code == 502
        assert "[poll]" in resp.json()["error"]

    def test_invalid_id_400(self, test_client, upstream):
        resp = test_client.get("/api/predictions/bad%20id")
        assert resp.status_code == 400
        assert upstream.requests == []

    def test_trailing_newline_id_400(self, test_client, upstream):
        resp = test_client.get("/api/predictions/abc%0A")
        assert resp.status_code == 400
        assert "Invalid prediction id" in resp.json()["error"]
        assert upstream.requests == []

    def test_missing_token_500(self, no_token_client):
        resp = no_token_client.get("/api/predictions/abc")
        assert resp.status_code == 500


# ---------------------------------------------------------------------------
# Upload endpoint tests.
# ---------------------------------------------------------------------------


class TestUpload:
    """Test POST /api/upload and GET /uploads/{name}."""

    def test_upload_png(self, test_client, upstream, test_config):
        resp = test_client.post("/api/upload", json={"dataUrl": PNG_DATA_URL})

        assert resp.status_code == 200
        data = resp.json()
        assert data["url"].startswith("http://testserver/uploads/")
        assert data["url"].endswith(".png")
        assert data["mime"] == "image/png"
        assert data["size"] == len(PNG_BYTES)

        name = data["url"].rsplit("/", 1)[-1]
        assert (test_config.upload_dir / name).read_bytes() == PNG_BYTES
        assert upstream.requests[0].method == "HEAD"

    def test_upload_honours_forwarding_headers(self, test_client):
        resp = test_client.post(
            "/api/upload",
            json={"dataUrl": PNG_DATA_URL},
            headers={"X-Forwarded-Proto": "https", "X-Forwarded-Host": "relay.example.com"},
        )
        assert resp.status_code == 200
        assert resp.json()["url"].startswith("https://relay.example.com/uploads/")

    def test_malformed_data_url_400(self, test_client):
        resp = test_client.post("/api/upload", json={"dataUrl": "data:image/png," + "AAAA"})
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_missing_data_url_400(self, test_client):
        resp = test_client.post("/api/upload", json={})
        assert resp.status_code == 400
        assert "dataUrl" in resp.json()["error"]

    def test_unreachable_upload_400(self, test_client, upstream):
        upstream.uploads_status = 404
        resp = test_client.post("/api/upload", json={"dataUrl": PNG_DATA_URL})

        assert resp.status_code == 400
        data = resp.json()
        assert "not publicly accessible" in data["error"]
        assert data["mime"] == "image/png"
        assert data["url"].endswith(".png")

    def test_control_character_in_forwarded_host_400(self, test_client, upstream, test_config):
        resp = test_client.post(
            "/api/upload",
            json={"dataUrl": PNG_DATA_URL},
            headers={"X-Forwarded-Host": "bad host\x7f"},
        )
        assert resp.status_code == 400
        assert "X-Forwarded-Host" in resp.json()["error"]
        assert list(test_config.upload_dir.iterdir()) == []
        assert upstream.requests == []

    def test_oversized_upload_400(self, make_client, test_config):
        client = make_client(test_config.model_copy(update={"max_upload_bytes": 64}))
        resp = client.post("/api/upload", json={"dataUrl": PNG_DATA_URL})
        assert resp.status_code == 400
        assert "exceeds 64 bytes" in resp.json()["error"]

    def test_uploaded_file_served_with_immutable_cache(self, test_client, test_config):
        (test_config.upload_dir / "0123456789abcdef.png").write_bytes(PNG_BYTES)

        resp = test_client.get("/uploads/0123456789abcdef.png")
        assert resp.status_code == 200
        assert resp.content == PNG_BYTES
        assert resp.headers["cache-control"] == "public, max-age=31536000, immutable"

    def test_upload_then_serve(self, test_client):
        url = test_client.post("/api/upload", json={"dataUrl": PNG_DATA_URL}).json()["url"]
        resp = test_client.get(url.replace("http://testserver", ""))
        assert resp.status_code == 200
        assert resp.content == PNG_BYTES


# ---------------------------------------------------------------------------
# Debug and static routes.
# ---------------------------------------------------------------------------


class TestDebugUploads:
    """Test GET /debug/uploads."""

    def test_disabled_by_default(self, test_client):
        resp = test_client.get("/debug/uploads")
        assert resp.status_code == 404
        assert "error" in resp.json()

    def test_lists_files_when_enabled(self, make_client, test_config):
        client = make_client(test_config.model_copy(update={"enable_debug_routes": True}))
        (test_config.upload_dir / "aaaa.png").write_bytes(b"x")

        resp = client.get("/debug/uploads")
        assert resp.status_code == 200
        assert resp.json() == {"count": 1, "files": ["aaaa.png"]}


class TestStaticFallback:
    """Test the catch-all static route."""

    def test_root_serves_index(self, test_client):
        resp = test_client.get("/")
        assert resp.status_code == 200
        assert "Seedream Relay" in resp.text

    def test_client_route_serves_index(self, test_client):
        resp = test_client.get("/gallery/42")
        assert resp.status_code == 200
        assert "Seedream Relay" in resp.text

    def test_static_asset_served(self, test_client):
        resp = test_client.get("/app.js")
        assert resp.status_code == 200
        assert "relay" in resp.text

    def test_missing_shell_404(self, make_client, test_config, temp_dir):
        client = make_client(test_config.model_copy(update={"static_dir": temp_dir / "nothing"}))
        resp = client.get("/")
        assert resp.status_code == 404
        assert "error" in resp.json()


# ---------------------------------------------------------------------------
# Error rendering tests.
# ---------------------------------------------------------------------------


class TestUnexpectedErrors:
    """Test the catch-all exception handler."""

    def test_unhandled_exception_rendered_as_json(self, test_config, upstream):
        app = create_app(test_config, transport=httpx.MockTransport(upstream))

        async def explode(prediction_id):
            raise RuntimeError("boom")

        with TestClient(app, raise_server_exceptions=False) as client:
            app.state.poller.get_status = explode
            resp = client.get("/api/predictions/abc")

        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error"}
