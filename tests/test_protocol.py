"""Sentinel framing, command wrapping and output cleanup."""

from ssh_liaison.ssh import (
    CSH, FISH, POSIX, CommandInvocation, dialect_for_shell, make_marker,
)
from ssh_liaison.utils import clean_output

MARKER = "__SSHL_3_deadbeefcafef00d__"


def _invocation(**kwargs):
    return CommandInvocation(sequence=3, command="ls", marker=MARKER, **kwargs)


def test_invocation_completes_on_sentinel_line():
    inv = _invocation()
    assert inv.feed(b"hello\r\nworld\r\n") is False
    assert inv.feed(MARKER.encode() + b":0\r\n") is True
    assert inv.completed
    assert inv.exit_status == 0
    assert inv.output == "hello\r\nworld\r\n"


def test_invocation_handles_marker_split_across_chunks():
    stream = b"a\r\nb\r\n" + MARKER.encode() + b":127\r\n"
    inv = _invocation()
    done = [inv.feed(stream[i:i + 1]) for i in range(len(stream))]
    assert done[-1] is True
    assert not any(done[:-1])
    assert inv.exit_status == 127
    assert inv.output == "a\r\nb\r\n"


def test_invocation_waits_for_end_of_sentinel_line():
    inv = _invocation()
    assert inv.feed(MARKER.encode() + b":1") is False
    assert inv.feed(b"\r\n") is True
    assert inv.exit_status == 1


def test_previous_marker_does_not_complete_invocation():
    old = "__SSHL_2_0123456789abcdef__"
    inv = _invocation()
    assert inv.feed(old.encode() + b":0\r\nstill running\r\n") is False
    assert not inv.completed
    assert "still running" in inv.output


def test_output_cap_drops_oldest_text():
    inv = _invocation(max_output_chars=10)
    inv.feed(b"0123456789abcdef\n")
    inv.feed(MARKER.encode() + b":0\n")
    assert inv.truncated
    assert inv.output == "789abcdef\n"


def test_multibyte_character_split_between_reads():
    inv = _invocation()
    inv.feed(b"h\xc3")
    inv.feed(b"\xa9llo\n" + MARKER.encode() + b":0\n")
    assert inv.output == "héllo\n"


def test_tail_includes_uncommitted_text():
    inv = _invocation()
    inv.feed(b"[sudo] password for pi: ")
    assert inv.tail().endswith("password for pi: ")


def test_make_marker_is_unique_per_call():
    first, second = make_marker(5), make_marker(5)
    assert first.startswith("__SSHL_5_")
    assert first != second


def test_wrap_puts_sentinel_on_its_own_line():
    wrapped = POSIX.wrap("ls -la", MARKER)
    assert wrapped == f"{{ ls -la\n}}; {POSIX.sentinel_statement(MARKER)}\n"


def test_wrap_survives_trailing_comment_and_separators():
    for command in ("echo hi  # say hi", "make &", "cd /tmp;", "true && false"):
        body, closing, _ = POSIX.wrap(command, MARKER).split("\n")
        assert body == "{ " + command
        assert closing == "}; " + POSIX.sentinel_statement(MARKER)


def test_wrapped_line_never_contains_marker_verbatim():
    wrapped = POSIX.wrap("uptime", MARKER)
    assert MARKER not in wrapped
    assert POSIX.echo_fragment(MARKER) in wrapped


def test_wrap_multiline_groups_body():
    wrapped = POSIX.wrap("for i in 1 2\ndo echo $i\ndone\n", MARKER)
    assert wrapped.startswith("{ for i in 1 2\n")
    assert "\ndone\n}; echo " in wrapped

    fish = FISH.wrap("set x 1  # one\necho $x", MARKER)
    assert fish.startswith("begin; set x 1  # one\n")
    assert "\nend; echo " in fish

    csh = CSH.wrap("echo hi # say hi", MARKER)
    assert csh == f"echo hi # say hi\n{CSH.sentinel_statement(MARKER)}\n"


def test_dialect_status_variables():
    assert POSIX.sentinel_statement(MARKER).endswith(':$?"')
    assert FISH.sentinel_statement(MARKER).endswith(':$status"')
    assert CSH.sentinel_statement(MARKER).endswith(':$status"')


def test_setup_line_adds_extra_path():
    assert POSIX.setup_line("/opt/bin").endswith("export PATH=/opt/bin:$PATH")
    assert FISH.setup_line("/opt/bin").endswith("set -gx PATH /opt/bin $PATH")
    assert "PATH" not in CSH.setup_line(None)


def test_dialect_for_shell():
    assert dialect_for_shell("/usr/bin/fish") is FISH
    assert dialect_for_shell("-tcsh") is CSH
    assert dialect_for_shell("/bin/csh") is CSH
    assert dialect_for_shell("/bin/zsh") is POSIX
    assert dialect_for_shell("") is POSIX


def test_clean_output_strips_escapes_and_crlf():
    raw = "\x1b]0;pi@rpi: ~\x07\x1b[32mgreen\x1b[0m\r\nline2\r\n"
    assert clean_output(raw) == "green\nline2"


def test_clean_output_drops_echoed_command_line():
    echoed = POSIX.wrap("ls", MARKER).rstrip("\n")
    raw = f"{echoed}\r\nfile1\r\nfile2\r\n"
    assert clean_output(raw, POSIX.echo_fragment(MARKER)) == "file1\nfile2"


def test_clean_output_without_echo_keeps_everything():
    assert clean_output("file1\r\n", POSIX.echo_fragment(MARKER)) == "file1"
