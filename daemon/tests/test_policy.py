"""Tests for the reconnection policy."""

import pytest

from linkd.config import ReconnectConfig
from linkd.linking.policy import GiveUp, ReconnectPolicy, Retry
from linkd.transport import DisconnectReason


class TestReconnectPolicy:
    """Test retry decisions."""

    def test_first_disconnect_retries_after_base_delay(self):
        policy = ReconnectPolicy()

        assert policy.decide(DisconnectReason.CONNECTION_LOST, 1) == Retry(2.0)

    def test_delay_grows_linearly(self):
        policy = ReconnectPolicy(max_attempts=10)

        delays = [policy.decide(DisconnectReason.TIMED_OUT, n).delay for n in (1, 2, 3, 4)]

        assert delays == [2.0, 4.0, 6.0, 8.0]

    def test_delay_is_capped(self):
        policy = ReconnectPolicy(max_attempts=100)

        assert policy.decide(DisconnectReason.STREAM_ERROR, 50) == Retry(10.0)

    def test_gives_up_when_attempts_reach_limit(self):
        """Three transient disconnects with the default limit give up."""
        policy = ReconnectPolicy()

        assert isinstance(policy.decide(DisconnectReason.CONNECTION_LOST, 2), Retry)
        decision = policy.decide(DisconnectReason.CONNECTION_LOST, 3)

        assert isinstance(decision, GiveUp)
        assert "exhausted" in decision.reason

    @pytest.mark.parametrize(
        "reason", [DisconnectReason.LOGGED_OUT, DisconnectReason.AUTH_FAILURE]
    )
    def test_terminal_reasons_never_retry(self, reason):
        decision = ReconnectPolicy().decide(reason, 1)

        assert isinstance(decision, GiveUp)
        assert reason.value in decision.reason

    @pytest.mark.parametrize(
        "reason",
        [
            DisconnectReason.RESTART_REQUIRED,
            DisconnectReason.CONNECTION_LOST,
            DisconnectReason.CONNECTION_FAILED,
            DisconnectReason.TIMED_OUT,
            DisconnectReason.STREAM_ERROR,
            DisconnectReason.UNKNOWN,
        ],
    )
    def test_transient_reasons_retry(self, reason):
        assert isinstance(ReconnectPolicy().decide(reason, 1), Retry)

    def test_from_config(self):
        policy = ReconnectPolicy.from_config(
            ReconnectConfig(max_attempts=5, base_delay=0.5, max_delay=1.0)
        )

        assert policy == ReconnectPolicy(5, 0.5, 1.0)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"base_delay": -1.0},
            {"base_delay": 5.0, "max_delay": 1.0},
        ],
    )
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            ReconnectPolicy(**kwargs)
