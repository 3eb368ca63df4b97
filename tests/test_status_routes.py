"""
Tests for Status API Routes.

Tests dependency checks and the aggregated status endpoint.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from chainchat.api import status_routes
from chainchat.api.status_routes import (
    ProviderStatus,
    StatusLevel,
    calculate_overall_status,
    check_postgresql,
    check_settlement_history,
)
from chainchat.exceptions import ChainUnreachableError


def provider(level: StatusLevel) -> ProviderStatus:
    return ProviderStatus(status=level, latency_ms=10, last_check=datetime.now(UTC).isoformat())


@pytest.fixture(autouse=True)
def clear_status_cache():
    status_routes._status_cache.clear()
    yield
    status_routes._status_cache.clear()


class TestCalculateOverallStatus:
    """Tests for calculate_overall_status function."""

    def test_all_operational(self) -> None:
        providers = {"a": provider(StatusLevel.OPERATIONAL), "b": provider(StatusLevel.OPERATIONAL)}
        assert calculate_overall_status(providers) == StatusLevel.OPERATIONAL

    def test_degraded_wins_over_operational(self) -> None:
        providers = {"a": provider(StatusLevel.OPERATIONAL), "b": provider(StatusLevel.DEGRADED)}
        assert calculate_overall_status(providers) == StatusLevel.DEGRADED

    def test_outage_wins(self) -> None:
        providers = {"a": provider(StatusLevel.DEGRADED), "b": provider(StatusLevel.OUTAGE)}
        assert calculate_overall_status(providers) == StatusLevel.OUTAGE


class TestCheckPostgresql:
    """Tests for check_postgresql."""

    async def test_operational(self, session_factory) -> None:
        with patch(
            "chainchat.api.status_routes.get_write_session_factory", return_value=session_factory
        ):
            result = await check_postgresql()

        assert result.status == StatusLevel.OPERATIONAL
        assert result.latency_ms is not None

    async def test_connection_failure(self, session_factory, db_session) -> None:
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("x")))

        with patch(
            "chainchat.api.status_routes.get_write_session_factory", return_value=session_factory
        ):
            result = await check_postgresql()

        assert result.status == StatusLevel.OUTAGE
        assert result.message == "Connection failed"


class TestCheckSettlementHistory:
    """Tests for check_settlement_history."""

    async def test_operational(self) -> None:
        with patch("chainchat.api.status_routes.HyperionClient") as MockClient:
            MockClient.return_value.health = AsyncMock(return_value={"health": []})
            MockClient.return_value.aclose = AsyncMock()
            result = await check_settlement_history()

        assert result.status == StatusLevel.OPERATIONAL
        MockClient.return_value.aclose.assert_awaited_once()

    async def test_unreachable(self) -> None:
        with patch("chainchat.api.status_routes.HyperionClient") as MockClient:
            MockClient.return_value.health = AsyncMock(
                side_effect=ChainUnreachableError("https://hyperion.test", "timed out")
            )
            MockClient.return_value.aclose = AsyncMock()
            result = await check_settlement_history()

        assert result.status == StatusLevel.OUTAGE
        MockClient.return_value.aclose.assert_awaited_once()


class TestStatusEndpoint:
    """Tests for GET /v1/status."""

    def _patch_checks(self, db_level: StatusLevel, hyperion_level: StatusLevel):
        db_check = AsyncMock(return_value=provider(db_level))
        hyperion_check = AsyncMock(return_value=provider(hyperion_level))
        return (
            patch("chainchat.api.status_routes.check_postgresql", db_check),
            patch("chainchat.api.status_routes.check_settlement_history", hyperion_check),
            db_check,
        )

    def test_aggregates_providers(self, client) -> None:
        db_patch, hyperion_patch, _ = self._patch_checks(
            StatusLevel.OPERATIONAL, StatusLevel.OUTAGE
        )
        with db_patch, hyperion_patch:
            body = client.get("/v1/status").json()

        assert body["service"] == "chainchat"
        assert body["status"] == "outage"
        assert set(body["providers"]) == {"postgresql", "hyperion"}

    def test_result_is_cached(self, client) -> None:
        db_patch, hyperion_patch, db_check = self._patch_checks(
            StatusLevel.OPERATIONAL, StatusLevel.OPERATIONAL
        )
        with db_patch, hyperion_patch:
            client.get("/v1/status")
            client.get("/v1/status")

        assert db_check.await_count == 1


def test_provider_status_defaults() -> None:
    status = ProviderStatus(status=StatusLevel.OUTAGE, last_check="2024-01-15T00:00:00+00:00")
    assert status.latency_ms is None
    assert status.message is None
