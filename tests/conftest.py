"""Shared pytest fixtures."""

from __future__ import annotations

import os

# Keep the developer's real ~/.ssh and environment out of the tests
for _name in list(os.environ):
    if _name.startswith("SSH_LIAISON_"):
        del os.environ[_name]

import pytest

from ssh_liaison.config import ServerConfig
from ssh_liaison.ssh import SessionManager, SSHSession
from tests.mock_ssh import FakeShellChannel, SessionFactory


@pytest.fixture
def settings(tmp_path):
    cfg = ServerConfig()
    cfg.SSH_DIR = str(tmp_path / "ssh")
    cfg.SSH_CONFIG_PATH = str(tmp_path / "ssh" / "config")
    cfg.KNOWN_HOSTS_PATH = str(tmp_path / "ssh" / "known_hosts")
    cfg.VERIFY_HOST_KEY = False
    cfg.USE_AGENT = False
    cfg.COMMAND_TIMEOUT = 5.0
    cfg.SHELL_DIALECT = "auto"
    (tmp_path / "ssh").mkdir()
    return cfg


@pytest.fixture
def channel():
    return FakeShellChannel()


@pytest.fixture
def session(channel, settings):
    sess = SSHSession("rpi", channel, settings=settings, startup_settle=0)
    sess.start()
    yield sess
    sess.close()


@pytest.fixture
def factory(settings):
    return SessionFactory(settings)


@pytest.fixture
def manager(settings, factory):
    mgr = SessionManager(settings, session_factory=factory)
    yield mgr
    mgr.close_all()
