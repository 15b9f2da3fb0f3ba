import io

from ssh_liaison.cli import CliShell


def _shell(manager, script=""):
    return CliShell(manager, stdin=io.StringIO(script), stdout=io.StringIO(), stderr=io.StringIO())


def test_direct_connect_and_run(manager, factory):
    shell = _shell(manager)
    assert shell.handle_line("connect pi 192.168.1.50 raspberry 2222\n")
    assert shell.current_host == "pi_192.168.1.50"
    params = factory.calls[0]
    assert (params.user, params.hostname, params.port, params.password) == ("pi", "192.168.1.50", 2222, "raspberry")

    shell.handle_line("cd /tmp")
    shell.handle_line("pwd")
    assert shell.stdout.getvalue().strip() == "/tmp"


def test_connect_usage_and_not_connected(manager):
    shell = _shell(manager)
    shell.handle_line("connect")
    shell.handle_line("uptime")
    errors = shell.stderr.getvalue()
    assert "Usage: connect <host-alias>" in errors
    assert "Not connected to any host" in errors


def test_nonzero_exit_is_reported(manager):
    shell = _shell(manager)
    shell.handle_line("connect pi 10.0.0.1")
    shell.handle_line("false")
    assert "[exit 1]" in shell.stderr.getvalue()


def test_disconnect_and_exit(manager):
    shell = _shell(manager)
    shell.handle_line("connect pi 10.0.0.1")
    assert shell.handle_line("disconnect")
    assert shell.current_host is None
    assert manager.get_session("pi_10.0.0.1") is None
    assert shell.handle_line("exit") is False


def test_loop_stops_on_quit(manager):
    shell = _shell(manager, "connect pi 10.0.0.1\necho hi\nquit\necho never\n")
    shell.loop()
    out = shell.stdout.getvalue()
    assert "hi" in out
    assert "never" not in out
    assert "[pi_10.0.0.1]> " in out
    assert manager.get_session("pi_10.0.0.1") is None
