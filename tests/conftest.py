import os
import tempfile

import pytest

# main 모듈 import 시 생성되는 기본 앱이 작업 디렉터리를 건드리지 않도록.
os.environ.setdefault("REEL_STORAGE_ROOT", os.path.join(tempfile.gettempdir(), "reel-test-storage"))

from fastapi.testclient import TestClient  # noqa: E402

from fakes import MEDIA_URL, FakeResolver, FakeSession, FakeTranscoder  # noqa: E402
from services.app_config import AppSettings  # noqa: E402
from services.context import AppContext  # noqa: E402
from services.extractors import ExtractionResult  # noqa: E402
from services.media_fetcher import MediaFetcher  # noqa: E402
from services.storage import EphemeralStorage  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return AppSettings(
        storage_root=tmp_path / "storage",
        resolve_initial_jitter_max_sec=0.0,
        transcode_cleanup_delay_sec=0.0,
    )


@pytest.fixture
def storage(settings):
    store = EphemeralStorage(settings.storage_root)
    store.ensure_dirs()
    yield store
    store.release_pending()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def resolver():
    return FakeResolver(result=ExtractionResult(media_urls=[MEDIA_URL], extractor="fake"))


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def context(settings, storage, session, resolver, transcoder):
    return AppContext(
        settings=settings,
        resolver=resolver,
        fetcher=MediaFetcher(session=session, headers=settings.request_headers),
        storage=storage,
        transcoder=transcoder,
    )


@pytest.fixture
def client(context):
    from main import create_app

    with TestClient(create_app(context=context)) as test_client:
        yield test_client
