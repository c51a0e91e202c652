"""Denylist pre-filter for shell commands.

``is_safe`` is a blunt case-insensitive substring check over the command
with whitespace runs collapsed to single spaces. It does not parse
the shell: a token inside quotes, after ``;`` or after ``|`` still rejects
the whole command. False positives are accepted.

This is not a security boundary. Substring matching is easy to bypass
(path tricks, aliases, commands that are not listed), so execution must also
happen inside an OS-level sandbox such as a container, a restricted user or
seccomp filters.
"""

DENYLIST: tuple[str, ...] = (
    # destructive filesystem operations
    "rm -rf",
    "rm -fr",
    "rm -r -f",
    "rm -f -r",
    "rm --recursive",
    "rm -r /",
    "mkfs",
    "dd if=",
    "> /dev/sd",
    "chmod -r 777 /",
    "shred ",
    # fork bombs
    ":(){",
    ":() {",
    # privilege escalation
    "sudo",
    "su ",
    "doas ",
    "chown root",
    # network tools
    "wget",
    "curl",
    "nc ",
    "netcat",
    "ncat",
    "telnet",
    "ssh ",
    "scp ",
    "ftp ",
    # host control
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
)


def find_denied(command: str) -> str | None:
    """Return the first denylisted token found in *command*, if any."""
    lowered = " ".join(command.lower().split())
    for token in DENYLIST:
        if token in lowered:
            return token
    return None


def is_safe(command: str) -> bool:
    return find_denied(command) is None
