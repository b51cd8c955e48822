from typing import Optional

import httpx
import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from marketmap.main import create_app
from tests.fakes import FakeClock, FakeGeminiClient, FakeSleep, RecordingRecorder, make_settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def recorder() -> RecordingRecorder:
    return RecordingRecorder()


@pytest.fixture
def app_factory():
    def _factory(
        *,
        orchestrator=None,
        fake_gemini: Optional[FakeGeminiClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        **settings_overrides,
    ):
        settings = make_settings(**settings_overrides)
        gemini = fake_gemini or FakeGeminiClient()
        http_client = http_client or httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        app = create_app(settings, gemini_client=gemini, http_client=http_client, orchestrator=orchestrator)
        return app, gemini

    return _factory


@pytest.fixture
async def client(app_factory):
    app, gemini = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_gemini = gemini  # type: ignore[attr-defined]
            yield http_client
