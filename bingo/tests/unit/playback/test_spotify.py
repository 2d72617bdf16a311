import json
import time

import httpx
import pytest

from bingo.logic.exceptions import DeviceRestrictedError, PlaybackError, TokenExpiredError
from bingo.playback.credentials import StoredTokens, TokenStore
from bingo.playback.spotify import RetryPolicy, SpotifyPlaybackController

API = "https://api.test/v1"
ACCOUNTS = "https://accounts.test"


class FakeSpotify:
    """Scripted HTTP backend: queue responses per path, record every request."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: dict[str, list[httpx.Response]] = {}

    def queue(self, path: str, *responses: httpx.Response) -> None:
        self.responses.setdefault(path, []).extend(responses)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        pending = self.responses.get(request.url.path)
        if pending:
            return pending.pop(0)
        return httpx.Response(204)


@pytest.fixture
def fake():
    return FakeSpotify()


@pytest.fixture
def token_store(tmp_path):
    store = TokenStore(tmp_path / "tokens.json")
    store.save(StoredTokens(access_token="old-token", refresh_token="refresh", expires_at=time.time() + 3600))
    return store


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
async def spotify(fake, token_store, sleeps):
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    controller = SpotifyPlaybackController(
        token_store,
        client_id="cid",
        client_secret="secret",
        api_url=API,
        accounts_url=ACCOUNTS,
        retry=RetryPolicy(attempts=3, backoff_seconds=0.5),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake)),
        sleep=fake_sleep,
    )
    yield controller
    await controller.aclose()


def _token_response(token: str = "new-token") -> httpx.Response:
    return httpx.Response(200, json={"access_token": token, "expires_in": 3600})


class TestGetState:
    async def test_parses_player_state(self, spotify, fake):
        fake.queue(
            "/v1/me/player",
            httpx.Response(
                200,
                json={
                    "is_playing": True,
                    "progress_ms": 1234,
                    "item": {"id": "track1"},
                    "device": {"id": "dev1", "name": "Kitchen"},
                },
            ),
        )

        state = await spotify.get_state()

        assert state.is_playing is True
        assert state.track_id == "track1"
        assert state.progress_ms == 1234
        assert state.device_id == "dev1"
        assert state.device_name == "Kitchen"

    async def test_no_active_player(self, spotify):
        assert await spotify.get_state() is None

    async def test_sends_bearer_token(self, spotify, fake):
        await spotify.pause("dev1")

        assert fake.requests[0].headers["Authorization"] == "Bearer old-token"
        assert fake.requests[0].url.params["device_id"] == "dev1"


class TestCommands:
    async def test_start_body(self, spotify, fake):
        await spotify.start("dev1", ["spotify:track:abc"], position_ms=5000)

        request = fake.requests[0]
        assert request.method == "PUT"
        assert request.url.path == "/v1/me/player/play"
        assert json.loads(request.content) == {"uris": ["spotify:track:abc"], "position_ms": 5000}

    async def test_shuffle_and_repeat_params(self, spotify, fake):
        await spotify.set_shuffle("dev1", enabled=False)
        await spotify.set_repeat("dev1", "off")

        assert fake.requests[0].url.params["state"] == "false"
        assert fake.requests[1].url.params["state"] == "off"

    async def test_queue_uses_post(self, spotify, fake):
        await spotify.add_to_queue("dev1", "spotify:track:abc")

        assert fake.requests[0].method == "POST"
        assert fake.requests[0].url.params["uri"] == "spotify:track:abc"


class TestTokenRefresh:
    async def test_unauthorized_refreshes_once_and_retries(self, spotify, fake, token_store):
        fake.queue("/v1/me/player/pause", httpx.Response(401, json={"error": {"message": "expired"}}))
        fake.queue("/api/token", _token_response())

        await spotify.pause("dev1")

        assert fake.paths() == ["/v1/me/player/pause", "/api/token", "/v1/me/player/pause"]
        assert fake.requests[2].headers["Authorization"] == "Bearer new-token"
        assert token_store.load().access_token == "new-token"
        assert token_store.load().refresh_token == "refresh"

    async def test_second_unauthorized_raises(self, spotify, fake):
        fake.queue(
            "/v1/me/player/pause",
            httpx.Response(401, json={"error": {"message": "expired"}}),
            httpx.Response(401, json={"error": {"message": "still expired"}}),
        )
        fake.queue("/api/token", _token_response())

        with pytest.raises(TokenExpiredError):
            await spotify.pause("dev1")

    async def test_refresh_rejected(self, spotify, fake):
        fake.queue("/v1/me/player/pause", httpx.Response(401))
        fake.queue("/api/token", httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(TokenExpiredError, match="invalid_grant"):
            await spotify.pause("dev1")

    async def test_expired_token_refreshed_before_request(self, fake, tmp_path):
        store = TokenStore(tmp_path / "tokens.json")
        store.save(StoredTokens(access_token="stale", refresh_token="refresh", expires_at=time.time() - 10))
        fake.queue("/api/token", _token_response("fresh"))
        controller = SpotifyPlaybackController(
            store,
            client_id="cid",
            client_secret="secret",
            api_url=API,
            accounts_url=ACCOUNTS,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake)),
        )

        await controller.pause("dev1")
        await controller.aclose()

        assert fake.paths() == ["/api/token", "/v1/me/player/pause"]
        assert fake.requests[1].headers["Authorization"] == "Bearer fresh"

    async def test_missing_credentials(self, fake, tmp_path):
        controller = SpotifyPlaybackController(
            TokenStore(tmp_path / "none.json"),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake)),
        )

        with pytest.raises(TokenExpiredError):
            await controller.get_state()
        await controller.aclose()


class TestFailurePolicy:
    async def test_restriction_is_not_retried(self, spotify, fake):
        fake.queue(
            "/v1/me/player/pause",
            httpx.Response(403, json={"error": {"message": "Player command failed: Restriction violated"}}),
        )

        with pytest.raises(DeviceRestrictedError):
            await spotify.pause("dev1")
        assert len(fake.requests) == 1

    async def test_server_errors_retried_with_backoff(self, spotify, fake, sleeps):
        fake.queue("/v1/me/player/pause", httpx.Response(502), httpx.Response(503))

        await spotify.pause("dev1")

        assert len(fake.requests) == 3
        assert sleeps == [0.5, 1.0]

    async def test_gives_up_after_attempts(self, spotify, fake):
        fake.queue("/v1/me/player/pause", httpx.Response(500), httpx.Response(500), httpx.Response(429))

        with pytest.raises(PlaybackError, match="429"):
            await spotify.pause("dev1")
        assert len(fake.requests) == 3

    async def test_client_error_not_retried(self, spotify, fake):
        fake.queue("/v1/me/player/pause", httpx.Response(404, json={"error": {"message": "Device not found"}}))

        with pytest.raises(PlaybackError, match="Device not found"):
            await spotify.pause("dev1")
        assert len(fake.requests) == 1


class TestRetryPolicy:
    def test_delays_double(self):
        policy = RetryPolicy(attempts=4, backoff_seconds=0.3)

        assert [policy.delay_for(n) for n in range(1, 5)] == [0.0, 0.3, 0.6, 1.2]
