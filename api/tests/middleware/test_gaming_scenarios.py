"""
End-to-end admission scenarios through the HTTP stack.
"""

from httpx import AsyncClient

from gamegate.ratelimit.analytics import Outcome
from gamegate.ratelimit.service import GamingRateLimiter
from gamegate.ratelimit.types import EndpointClass, QuotaKey


class TestAnonymousVoting:
    """Anonymous callers get half the voting quota."""

    async def test_eighth_vote_is_denied(self, async_client: AsyncClient, limiter: GamingRateLimiter):
        """Seven votes pass, the eighth is refused with 429."""
        for _ in range(7):
            response = await async_client.post("/api/v1/voting/cast", json={"choice": 1})
            assert response.status_code == 200

        response = await async_client.post("/api/v1/voting/cast", json={"choice": 1})
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        data = response.json()
        assert data["code"] == "GAMING_RATE_LIMITED_VOTING"
        assert data["type"] == "voting"
        assert 1 <= data["retryAfter"] <= 60
        assert limiter.analytics.count(EndpointClass.VOTING, Outcome.DENIED_QUOTA) == 1

    async def test_headers_track_remaining(self, async_client: AsyncClient):
        """Each admitted vote reports the remaining quota."""
        first = await async_client.post("/api/v1/voting/cast", json={})
        second = await async_client.post("/api/v1/voting/cast", json={})
        assert first.headers["X-RateLimit-Limit"] == "7"
        assert first.headers["X-RateLimit-Remaining"] == "6"
        assert second.headers["X-RateLimit-Remaining"] == "5"
        assert first.headers["X-RateLimit-Policy"] == "7;w=60;class=voting"
        assert first.headers["X-RateLimit-User"] == "anonymous"

    async def test_window_resets(self, async_client: AsyncClient, clock):
        """After the window elapses voting is allowed again."""
        for _ in range(8):
            await async_client.post("/api/v1/voting/cast", json={})
        clock.advance(60)
        response = await async_client.post("/api/v1/voting/cast", json={})
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "6"


class TestAdminVoting:
    """Voting is enforced for admins, with the admin multiplier."""

    async def test_admin_gets_three_hundred(self, limiter: GamingRateLimiter, make_token):
        """The 300th admin vote admits and the 301st is denied."""
        headers = {"authorization": f"Bearer {make_token('admin-1', ['admin'])}"}
        for _ in range(300):
            decision = await limiter.evaluate("POST", "/api/v1/voting/cast", headers, peer="203.0.113.1")
            assert decision.headers["X-RateLimit-Limit"] == "300"
            assert not getattr(decision.verdict, "bypassed", False)
        decision = await limiter.evaluate("POST", "/api/v1/voting/cast", headers, peer="203.0.113.1")
        assert decision.verdict.reason.value == "quota"


class TestClanAdminBypass:
    """Admins skip bypassable classes entirely."""

    async def test_bypass_touches_no_counter(self, async_client: AsyncClient, limiter: GamingRateLimiter, admin_headers):
        """An admin clan action reports the full base quota and never increments the ledger."""
        for _ in range(40):
            response = await async_client.post("/api/v1/clans/c1/join", json={}, headers=admin_headers)
            assert response.status_code == 200
        assert response.headers["X-RateLimit-Policy"] == "30;w=120;class=clan"
        assert response.headers["X-RateLimit-Remaining"] == "30"
        assert response.headers["X-RateLimit-User"] == "authenticated"
        snapshot = await limiter.ledger.peek(QuotaKey("user:admin-1", EndpointClass.CLAN, "base"))
        assert snapshot.count == 0
        assert limiter.analytics.count(EndpointClass.CLAN, Outcome.BYPASSED) == 40


class TestTournamentParticipant:
    """Participation boosts the tournament quota from the next request on."""

    async def test_second_request_is_boosted(self, async_client: AsyncClient, auth_headers):
        """The first request marks participation; the second sees the boost."""
        headers = auth_headers("player-1")
        first = await async_client.get("/api/v1/tournaments/T1/bracket", headers=headers)
        second = await async_client.get("/api/v1/tournaments/T1/bracket", headers=headers)
        assert first.headers["X-RateLimit-Limit"] == "40"
        assert second.headers["X-RateLimit-Limit"] == "200"
        assert second.headers["X-Gaming-Integrity"] == "protected"

    async def test_participation_is_per_tournament(self, async_client: AsyncClient, auth_headers):
        """Joining one tournament does not boost another."""
        headers = auth_headers("player-1")
        await async_client.get("/api/v1/tournaments/T1/bracket", headers=headers)
        other = await async_client.get("/api/v1/tournaments/T2/bracket", headers=headers)
        assert other.headers["X-RateLimit-Limit"] == "40"


class TestWeb3DeferredCommit:
    """Successful web3 calls do not consume quota; failures do."""

    async def test_successes_are_not_counted(self, async_client: AsyncClient, auth_headers, limiter):
        """More successes than the quota all pass and leave the window empty."""
        headers = auth_headers("wallet-user")
        for _ in range(25):
            response = await async_client.post("/api/v1/web3/transfer", json={"amount": 1}, headers=headers)
            assert response.status_code == 200
        snapshot = await limiter.ledger.peek(QuotaKey("user:wallet-user", EndpointClass.WEB3, "base"))
        assert snapshot.count == 0

    async def test_failures_are_counted(self, async_client: AsyncClient, auth_headers):
        """Twenty failed attempts exhaust the quota."""
        headers = auth_headers("wallet-user")
        for _ in range(20):
            response = await async_client.post(
                "/api/v1/web3/transfer", params={"status": "400"}, json={"amount": 1}, headers=headers
            )
            assert response.status_code == 400
        response = await async_client.post("/api/v1/web3/transfer", json={"amount": 1}, headers=headers)
        assert response.status_code == 429
        assert response.json()["code"] == "GAMING_RATE_LIMITED_WEB3"


class TestModeratorChat:
    """Chat is flat and enforced for moderators too."""

    async def test_twenty_sixth_message_is_denied(self, async_client: AsyncClient, auth_headers):
        """Moderators get exactly the base chat limit."""
        headers = auth_headers("mod-1", ["moderator"])
        for _ in range(25):
            response = await async_client.post("/api/v1/chat/send", json={"text": "gg"}, headers=headers)
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Limit"] == "25"
        response = await async_client.post("/api/v1/chat/send", json={"text": "gg"}, headers=headers)
        assert response.status_code == 429
        assert "slow down" in response.json()["message"]


class TestLoadShedding:
    """Denials caused only by load are 503."""

    async def test_shed_denial(self, async_client: AsyncClient, limiter: GamingRateLimiter):
        """Under high load the adapted quota sheds with 503."""
        limiter.adaptive.set(service_load=0.9)
        for _ in range(7):
            response = await async_client.get("/api/v1/search", params={"q": "dragons"})
            assert response.status_code == 200
        response = await async_client.get("/api/v1/search", params={"q": "dragons"})
        assert response.status_code == 503
        assert "Retry-After" in response.headers
        assert limiter.analytics.count(EndpointClass.SEARCH, Outcome.DENIED_SHED) == 1
