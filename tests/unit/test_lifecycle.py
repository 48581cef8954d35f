"""Unit tests for component lifecycle and health results."""
import pytest

from bookrelay.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus


class Failing(BaseComponent):

    async def _do_start(self) -> None:
        raise OSError("address in use")


class Exploding(BaseComponent):

    async def _do_stop(self) -> None:
        raise RuntimeError("stuck")


class TestHealthStatus:

    def test_serves_traffic(self):
        assert HealthStatus.HEALTHY.serves_traffic
        assert HealthStatus.DEGRADED.serves_traffic
        assert not HealthStatus.UNHEALTHY.serves_traffic
        assert not HealthStatus.UNKNOWN.serves_traffic

    def test_severity_order(self):
        ordered = sorted(HealthStatus, key=lambda s: s.severity)
        assert ordered[0] is HealthStatus.HEALTHY
        assert ordered[-1] is HealthStatus.UNHEALTHY


class TestWorst:

    def test_empty(self):
        assert HealthCheckResult.worst([]) is None

    def test_picks_most_severe(self):
        results = [
            HealthCheckResult.healthy(),
            HealthCheckResult.unhealthy("listener down"),
            HealthCheckResult.degraded("synthesized"),
        ]
        assert HealthCheckResult.worst(results).message == "listener down"

    def test_first_wins_on_tie(self):
        first = HealthCheckResult.degraded("a")
        second = HealthCheckResult.degraded("b")
        assert HealthCheckResult.worst([first, second]) is first

    def test_to_dict(self):
        data = HealthCheckResult.degraded("synthesized", ticks=3).to_dict()
        assert data["status"] == "degraded"
        assert data["details"] == {"ticks": 3}


class TestBaseComponent:

    async def test_start_stop(self):
        component = BaseComponent(name="ticker")
        assert (await component.health_check()).message == "ticker not running"

        await component.start()
        assert component.is_running
        assert component.started_at is not None
        assert (await component.health_check()).status == HealthStatus.HEALTHY

        await component.stop()
        assert not component.is_running

    async def test_failed_start_stays_stopped(self):
        component = Failing()
        with pytest.raises(OSError):
            await component.start()
        assert not component.is_running
        await component.stop()

    async def test_failed_stop_still_marks_stopped(self):
        component = Exploding()
        await component.start()
        with pytest.raises(RuntimeError):
            await component.stop()
        assert not component.is_running
