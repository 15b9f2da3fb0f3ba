"""Credential ordering and fallback in AuthNegotiator."""

import os

import pytest

from ssh_liaison.auth import AuthNegotiator
from ssh_liaison.errors import AuthExhausted, ConnectError
from ssh_liaison.models import ConnectionParams
from tests.mock_ssh import FakeAgent, FakeTransport


def _key_loader(path, passphrase=None):
    return "key:" + os.path.basename(path)


class Connector:
    def __init__(self, *transports):
        self.transports = list(transports)
        self.calls = 0

    def __call__(self, params):
        self.calls += 1
        if not self.transports:
            raise ConnectError("unreachable", f"Failed to connect to {params.hostname}:{params.port}")
        return self.transports.pop(0)


@pytest.fixture
def ssh_dir(settings):
    for name in ("id_ed25519", "id_rsa"):
        path = os.path.join(settings.SSH_DIR, name)
        with open(path, "w") as handle:
            handle.write("dummy")
        os.chmod(path, 0o600)
    return settings.SSH_DIR


def _params(**kwargs):
    base = dict(host_id="rpi", hostname="192.168.1.50", user="pi")
    base.update(kwargs)
    return ConnectionParams(**base)


def _negotiator(settings, connector, agent_keys=None):
    return AuthNegotiator(
        settings,
        connector=connector,
        agent_factory=lambda: FakeAgent(agent_keys),
        key_loader=_key_loader,
    )


def test_plan_order(settings, ssh_dir, tmp_path):
    settings.USE_AGENT = True
    identity = tmp_path / "lab_key"
    identity.write_text("dummy")
    params = _params(identity_file=str(identity), password="hunter2")

    plan = _negotiator(settings, Connector()).plan(params)
    assert [attempt.method for attempt in plan] == [
        "agent", "identity_file", "default_key", "default_key", "default_key", "default_key", "password",
    ]
    assert [os.path.basename(a.label) for a in plan[2:6]] == ["id_ed25519", "id_rsa", "id_ecdsa", "id_dsa"]


def test_identities_only_skips_agent_and_default_keys(settings, ssh_dir, tmp_path):
    settings.USE_AGENT = True
    params = _params(identity_file=str(tmp_path / "only"), identities_only=True, password="pw")
    plan = _negotiator(settings, Connector()).plan(params)
    assert [attempt.method for attempt in plan] == ["identity_file", "password"]


def test_default_key_accepted(settings, ssh_dir):
    transport = FakeTransport(accepted_keys={"key:id_rsa"})
    result = _negotiator(settings, Connector(transport)).negotiate(_params())
    assert result is transport
    assert transport.calls == [("publickey", "key:id_ed25519"), ("publickey", "key:id_rsa")]


def test_agent_key_tried_first(settings, ssh_dir):
    settings.USE_AGENT = True
    transport = FakeTransport(accepted_keys={"agent-key"})
    _negotiator(settings, Connector(transport), agent_keys=["agent-key"]).negotiate(_params())
    assert transport.calls == [("publickey", "agent-key")]


def test_password_only_after_keys(settings, ssh_dir):
    transport = FakeTransport(password="hunter2")
    _negotiator(settings, Connector(transport)).negotiate(_params(password="hunter2"))
    methods = [method for method, _ in transport.calls]
    assert methods == ["publickey", "publickey", "password"]
    assert transport.authenticated


def test_keyboard_interactive_fallback(settings):
    transport = FakeTransport(password="hunter2", allowed_types=("publickey", "keyboard-interactive"))
    _negotiator(settings, Connector(transport)).negotiate(_params(password="hunter2"))
    assert [method for method, _ in transport.calls] == ["password", "keyboard-interactive"]
    assert transport.fallback is False
    assert transport.authenticated


def test_exhausted_reports_without_secret(settings, ssh_dir):
    transport = FakeTransport()
    with pytest.raises(AuthExhausted) as info:
        _negotiator(settings, Connector(transport)).negotiate(_params(password="hunter2"))

    exc = info.value
    assert exc.password_attempted is True
    assert "password" in exc.tried
    assert "hunter2" not in str(exc)
    assert "hunter2" not in repr(exc.to_result())
    assert exc.to_result()["error_kind"] == "AuthExhausted"
    assert exc.to_result()["password_attempted"] is True
    assert transport.closed


def test_exhausted_without_password(settings, ssh_dir):
    with pytest.raises(AuthExhausted) as info:
        _negotiator(settings, Connector(FakeTransport())).negotiate(_params())
    assert info.value.password_attempted is False
    assert len(info.value.tried) == 2


def test_missing_key_files_are_skipped(settings):
    with pytest.raises(AuthExhausted) as info:
        _negotiator(settings, Connector(FakeTransport())).negotiate(_params())
    assert info.value.tried == []


def test_dropped_connection_reconnects_once(settings, ssh_dir):
    first = FakeTransport(drop_after=1)
    second = FakeTransport(accepted_keys={"key:id_rsa"})
    connector = Connector(first, second)

    result = _negotiator(settings, connector).negotiate(_params())
    assert result is second
    assert connector.calls == 2
    assert first.closed


def test_unreachable_after_drop_aborts_remaining_credentials(settings, ssh_dir):
    first = FakeTransport(drop_after=1)
    connector = Connector(first)

    with pytest.raises(ConnectError) as info:
        _negotiator(settings, connector).negotiate(_params(password="hunter2"))
    assert info.value.reason == "unreachable"
    # only the first key reached the wire; rsa and the password were never tried
    assert first.calls == [("publickey", "key:id_ed25519")]


def test_password_never_in_params_repr():
    params = _params(password="hunter2")
    assert "hunter2" not in repr(params)
    assert params.describe()["password_supplied"] is True
    assert "hunter2" not in repr(params.describe())
