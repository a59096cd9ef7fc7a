"""
Unit tests for warpgate_broker.types module.
"""

from warpgate_broker.types import AUTH_ACCEPTED, AUTH_NEED, METHOD_OTP, AuthState


class TestAuthState:
    """Tests for AuthState."""

    def test_default_methods_not_shared(self):
        first = AuthState(state=AUTH_ACCEPTED)
        second = AuthState(state=AUTH_ACCEPTED)
        assert first.methods_remaining == ()
        assert isinstance(first.methods_remaining, tuple)
        assert first.methods_remaining is second.methods_remaining

    def test_from_json_methods_immutable(self):
        state = AuthState.from_json({"auth": {"state": AUTH_NEED, "methods_remaining": [METHOD_OTP]}})
        assert state.methods_remaining == (METHOD_OTP,)
        assert state.needs_otp

    def test_from_json_without_methods(self):
        state = AuthState.from_json({"state": {"auth": {"state": AUTH_ACCEPTED}, "started": True}})
        assert state.methods_remaining == ()
        assert state.accepted
        assert state.started

    def test_from_json_rejects_other_shapes(self):
        assert AuthState.from_json(None) is None
        assert AuthState.from_json({"auth": "Accepted"}) is None
