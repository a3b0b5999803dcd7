from urllib.parse import quote

import cv2
import numpy as np
import pytest

from fakes import MEDIA_URL, REEL_URL
from services.errors import PRIVATE_SUGGESTIONS
from services.extractors import ExtractionError, ExtractionResult, FailureKind


def _png(width=64, height=48):
    img = np.full((height, width, 3), 127, dtype=np.uint8)
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


def _files_in(storage, category):
    return sorted(p.name for p in storage.category_dir(category).iterdir())


# =========================
# /api/review
# =========================

def test_review_returns_video_info(client, session, resolver):
    session.add("HEAD", MEDIA_URL, headers={"Content-Length": "1048576", "Content-Type": "video/mp4"})

    resp = client.post("/api/review", json={"url": REEL_URL})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    info = body["videoInfo"]
    assert info["url"] == REEL_URL
    assert info["mediaUrl"] == MEDIA_URL
    assert info["fileSize"] == 1048576
    assert info["contentType"] == "video/mp4"
    assert info["title"] == "Instagram Reel"
    assert info["previewUrl"] == "/api/preview?url=" + quote(MEDIA_URL, safe="")
    assert resolver.calls == [REEL_URL]


def test_review_accepts_form_body(client, resolver):
    resp = client.post("/api/review", data={"url": REEL_URL})

    assert resp.status_code == 200
    assert resp.json()["videoInfo"]["fileSize"] is None
    assert resolver.calls == [REEL_URL]


def test_review_uses_extracted_title(client, resolver):
    resolver.result = ExtractionResult(media_urls=[MEDIA_URL], title="Sunset at the beach", extractor="fake")
    resp = client.post("/api/review", json={"url": REEL_URL})
    assert resp.json()["videoInfo"]["title"] == "Sunset at the beach"


@pytest.mark.parametrize("payload", [{"url": "not-a-url"}, {"url": ""}, {}, {"url": 42}])
def test_review_rejects_invalid_url_without_resolving(client, resolver, payload):
    resp = client.post("/api/review", json=payload)

    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert resolver.calls == []


def test_review_private_reel_is_403_with_guidance(client, resolver):
    resolver.error = ExtractionError(FailureKind.PRIVATE, "instaloader: private profile")

    resp = client.post("/api/review", json={"url": REEL_URL})

    assert resp.status_code == 403
    body = resp.json()
    assert body["success"] is False
    assert body["isPrivate"] is True
    assert body["suggestions"] == PRIVATE_SUGGESTIONS
    assert len(body["alternativeMethods"]) == 3
    # 내부 오류 문구는 응답에 노출하지 않는다.
    assert "instaloader" not in body["message"]


def test_review_resolution_failure_is_400(client, resolver):
    resolver.error = ExtractionError(FailureKind.TRANSIENT, "instaloader: 429")

    resp = client.post("/api/review", json={"url": REEL_URL})

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert "isPrivate" not in body


# =========================
# /api/preview
# =========================

def test_preview_passes_range_through(client, session):
    session.add(
        "GET",
        MEDIA_URL,
        status=206,
        body=b"r" * 1024,
        headers={
            "Content-Type": "video/mp4",
            "Content-Length": "1024",
            "Content-Range": "bytes 0-1023/1048576",
        },
    )

    resp = client.get("/api/preview", params={"url": MEDIA_URL}, headers={"Range": "bytes=0-1023"})

    assert resp.status_code == 206
    assert resp.headers["content-range"] == "bytes 0-1023/1048576"
    assert resp.headers["accept-ranges"] == "bytes"
    assert resp.headers["content-type"].startswith("video/mp4")
    assert len(resp.content) == 1024
    assert session.calls_for("GET")[0][2]["headers"] == {"Range": "bytes=0-1023"}


def test_preview_full_body(client, session):
    session.add("GET", MEDIA_URL, body=b"whole", headers={"Content-Type": "video/mp4", "Content-Length": "5"})

    resp = client.get("/api/preview", params={"url": MEDIA_URL})

    assert resp.status_code == 200
    assert resp.content == b"whole"


def test_preview_requires_url(client):
    resp = client.get("/api/preview")
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_preview_rejects_non_http_url(client):
    resp = client.get("/api/preview", params={"url": "file:///etc/passwd"})
    assert resp.status_code == 400


def test_preview_upstream_failure_is_500(client, session):
    session.add("GET", MEDIA_URL, status=403)
    resp = client.get("/api/preview", params={"url": MEDIA_URL})
    assert resp.status_code == 500
    assert resp.json()["success"] is False


def test_preview_upstream_drop_mid_body_keeps_partial_response(client, session):
    session.add("GET", MEDIA_URL, body=b"first-chunk", headers={"Content-Type": "video/mp4"}, breaks_mid_body=True)

    resp = client.get("/api/preview", params={"url": MEDIA_URL})

    assert resp.status_code == 200
    assert resp.content == b"first-chunk"
    assert session.responses[-1].raw.closed is True


# =========================
# /api/download
# =========================

def test_download_streams_attachment(client, session):
    session.add("GET", MEDIA_URL, body=b"reel-bytes", headers={"Content-Type": "video/mp4", "Content-Length": "10"})

    resp = client.post("/api/download", json={"url": REEL_URL})

    assert resp.status_code == 200
    assert resp.content == b"reel-bytes"
    disposition = resp.headers["content-disposition"]
    assert disposition.startswith("attachment;")
    assert 'filename="reel_' in disposition and disposition.endswith('.mp4"')


def test_download_rejects_invalid_url(client, resolver):
    resp = client.post("/api/download", json={"url": "https://example.com/video.mp4"})
    assert resp.status_code == 400
    assert resolver.calls == []


def test_download_private_reel_is_403(client, resolver):
    resolver.error = ExtractionError(FailureKind.PRIVATE, "private")
    resp = client.post("/api/download", json={"url": REEL_URL})
    assert resp.status_code == 403
    assert resp.json()["isPrivate"] is True


def test_download_with_crop_transcodes_and_cleans_up(client, session, storage, transcoder):
    session.add("GET", MEDIA_URL, body=b"source-video", headers={"Content-Type": "video/mp4"})

    resp = client.post(
        "/api/download",
        json={"url": REEL_URL, "crop": True, "x": 10, "y": 20, "width": 300, "height": 400},
    )

    assert resp.status_code == 200
    assert resp.content == b"cropped:source-video"
    assert "cropped_reel_" in resp.headers["content-disposition"]
    assert transcoder.crops[0][2].ffmpeg_filter() == "crop=300:400:10:20"
    assert _files_in(storage, "uploads") == []
    assert _files_in(storage, "processed") == []


def test_download_with_crop_on_image_post(client, session, storage, transcoder):
    session.add("GET", MEDIA_URL, body=_png(64, 48), headers={"Content-Type": "image/png"})

    resp = client.post(
        "/api/download",
        data={"url": REEL_URL, "crop": "true", "x": "0", "y": "0", "width": "32", "height": "16"},
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/jpeg"
    img = cv2.imdecode(np.frombuffer(resp.content, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert img.shape[:2] == (16, 32)
    assert transcoder.crops == []
    assert _files_in(storage, "uploads") == []


def test_download_link_mode_serves_stored_file(client, context, session, storage):
    context.settings.download_delivery = "link"
    session.add("GET", MEDIA_URL, body=b"stored-reel", headers={"Content-Type": "video/mp4"})

    resp = client.post("/api/download", json={"url": REEL_URL})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["fileSize"] == len(b"stored-reel")
    assert body["downloadUrl"] == f"/api/video/{body['filename']}"

    served = client.get(body["downloadUrl"])
    assert served.status_code == 200
    assert served.content == b"stored-reel"
    assert body["filename"] in served.headers["content-disposition"]


def test_download_with_non_finite_crop_value_is_400(client, resolver):
    resp = client.post("/api/download", json={"url": REEL_URL, "crop": True, "x": "inf", "width": 100, "height": 100})

    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert resolver.calls == []


def test_download_link_mode_keeps_image_extension(client, context, session):
    context.settings.download_delivery = "link"
    session.add("GET", MEDIA_URL, body=b"jpeg-bytes", headers={"Content-Type": "image/jpeg"})

    resp = client.post("/api/download", json={"url": REEL_URL})

    body = resp.json()
    assert body["filename"].endswith(".jpg")
    served = client.get(body["downloadUrl"])
    assert served.status_code == 200
    assert served.content == b"jpeg-bytes"


# =========================
# /api/crop
# =========================

def test_crop_image_non_finite_quality_uses_default(client):
    resp = client.post(
        "/api/crop",
        files={"file": ("photo.png", _png(64, 48), "image/png")},
        data={"width": "20", "height": "10", "quality": "inf"},
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/jpeg"


def test_crop_image_upload(client):
    resp = client.post(
        "/api/crop",
        files={"file": ("photo.png", _png(64, 48), "image/png")},
        data={"x": "8", "y": "8", "width": "20", "height": "10", "format": "png"},
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    img = cv2.imdecode(np.frombuffer(resp.content, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert img.shape[:2] == (10, 20)


def test_crop_image_outside_bounds_fails(client):
    resp = client.post(
        "/api/crop",
        files={"file": ("photo.png", _png(64, 48), "image/png")},
        data={"x": "60", "y": "0", "width": "20", "height": "10"},
    )
    assert resp.status_code == 500
    assert resp.json()["success"] is False


def test_crop_image_link_mode(client, context, storage):
    context.settings.crop_delivery = "link"

    resp = client.post(
        "/api/crop",
        files={"file": ("photo.png", _png(), "image/png")},
        data={"width": "10", "height": "10"},
    )

    body = resp.json()
    assert body["success"] is True
    assert body["downloadUrl"] == f"/api/download-processed/{body['filename']}"
    served = client.get(body["downloadUrl"])
    assert served.status_code == 200
    assert served.headers["content-type"] == "image/jpeg"


def test_crop_video_upload_streams_and_cleans_up(client, storage, transcoder):
    resp = client.post(
        "/api/crop",
        files={"file": ("clip.mov", b"movie", "video/quicktime")},
        data={"x": "0", "y": "0", "width": "50", "height": "50"},
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "video/mp4"
    assert resp.content == b"cropped:movie"
    assert transcoder.crops[0][0].suffix == ".mov"
    assert _files_in(storage, "uploads") == []
    assert _files_in(storage, "processed") == []


def test_crop_video_failure_cleans_up(client, storage, transcoder):
    from services.errors import TransformFailed

    transcoder.fail_with = TransformFailed(detail="ffmpeg exit 1")

    resp = client.post("/api/crop", files={"file": ("clip.mp4", b"movie", "video/mp4")})

    assert resp.status_code == 500
    assert _files_in(storage, "uploads") == []
    assert _files_in(storage, "processed") == []


def test_crop_requires_file(client):
    resp = client.post("/api/crop", data={"x": "0"})
    assert resp.status_code == 400


def test_crop_rejects_unsupported_extension(client, transcoder):
    resp = client.post("/api/crop", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert resp.status_code == 400
    assert transcoder.crops == []


def test_crop_rejects_oversized_upload(client, context):
    context.settings.upload_max_bytes = 10
    resp = client.post("/api/crop", files={"file": ("photo.png", _png(), "image/png")})
    assert resp.status_code == 400


def test_crop_routes_disabled(client, context):
    context.settings.crop_enabled = False
    assert client.post("/api/crop", files={"file": ("photo.png", _png(), "image/png")}).status_code == 404
    assert client.post("/api/file-info", files={"file": ("photo.png", _png(), "image/png")}).status_code == 404


# =========================
# /api/file-info
# =========================

def test_file_info_for_image(client):
    resp = client.post("/api/file-info", files={"file": ("photo.png", _png(64, 48), "image/png")})

    assert resp.status_code == 200
    info = resp.json()["fileInfo"]
    assert info["filename"] == "photo.png"
    assert info["mimetype"] == "image/png"
    assert info["type"] == "image"
    assert (info["width"], info["height"], info["format"]) == (64, 48, "png")


def test_file_info_for_video(client, storage, transcoder):
    resp = client.post("/api/file-info", files={"file": ("clip.mp4", b"movie", "video/mp4")})

    info = resp.json()["fileInfo"]
    assert info["type"] == "video"
    assert info["width"] == 1080
    assert info["duration"] == 12.5
    assert len(transcoder.probes) == 1
    assert _files_in(storage, "uploads") == []


def test_file_info_for_unknown_type(client):
    resp = client.post("/api/file-info", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert resp.json()["fileInfo"]["type"] == "unknown"


# =========================
# Stored files / health
# =========================

def test_unknown_stored_file_is_404(client):
    assert client.get("/api/video/reel_missing.mp4").status_code == 404
    assert client.get("/api/download-processed/cropped_missing.jpg").status_code == 404


def test_processed_file_is_deleted_after_serving(client, context, storage):
    context.settings.processed_ttl_sec = 0
    target = storage.category_dir("processed") / "cropped_done.jpg"
    target.write_bytes(b"jpeg")

    resp = client.get("/api/download-processed/cropped_done.jpg")

    assert resp.status_code == 200
    assert resp.content == b"jpeg"
    assert not target.exists()


def test_health_reports_version_and_counter(client):
    client.get("/api/health")
    body = client.get("/api/health").json()

    assert body["success"] is True
    assert body["version"] == "1.0.0"
    assert body["requestsServed"] >= 2
    assert body["timestamp"]


def test_cors_allows_any_origin(client):
    resp = client.get("/api/health", headers={"Origin": "https://frontend.example"})
    assert resp.headers["access-control-allow-origin"] == "*"


def test_review_scenario_with_cdn_url(client, session, resolver):
    resolver.result = ExtractionResult(media_urls=["https://cdn.example/v.mp4"], extractor="fake")
    session.add("HEAD", "https://cdn.example/v.mp4", headers={"Content-Length": "5000"})

    resp = client.post("/api/review", json={"url": "https://instagram.com/reel/ABC123/"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["videoInfo"]["mediaUrl"] == "https://cdn.example/v.mp4"
    assert body["videoInfo"]["fileSize"] == 5000


def test_preview_mid_file_range(client, session):
    session.add(
        "GET",
        MEDIA_URL,
        status=206,
        body=b"m" * 100,
        headers={"Content-Type": "video/mp4", "Content-Length": "100", "Content-Range": "bytes 100-199/5000"},
    )

    resp = client.get("/api/preview", params={"url": MEDIA_URL}, headers={"Range": "bytes=100-199"})

    assert resp.status_code == 206
    assert resp.headers["content-range"] == "bytes 100-199/5000"
    assert session.calls_for("GET")[0][2]["headers"]["Range"] == "bytes=100-199"


def test_create_app_builds_context_from_settings(settings):
    from main import create_app

    app = create_app(settings=settings)

    assert app.state.context.settings is settings
    assert app.state.context.storage.root == settings.storage_root
