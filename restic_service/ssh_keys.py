### stdlib imports
import contextlib
import os
import pathlib
import tempfile
import typing

### vendor imports
import sh

### local imports
from . import helper, invocation

ALIAS_PREFIX = "restic-service-host-"
CONFIG_MARKER = "# Added by restic-service"


class SSHFailed(RuntimeError):
    pass


class PublicKey(typing.NamedTuple):
    type: str
    data: str


def load_keys_from_string(string: str) -> list[PublicKey]:
    keys = []
    for line in string.splitlines():
        # ssh-keyscan reports diagnostics as comments
        fields = line.split()
        if len(fields) < 3 or line.startswith("#"):
            continue

        _, key_type, *rest = fields
        keys.append(PublicKey(key_type, " ".join(rest)))
    return keys


def load_keys_from_file(path: pathlib.Path) -> list[PublicKey]:
    return load_keys_from_string(path.read_text())


def save_keys_to_file(
    path: pathlib.Path, keys: typing.Iterable[PublicKey], host: str
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as handle:
        for key in keys:
            handle.write(f"{host} {key.type} {key.data}\n")


def ssh_keyscan_host(host: str) -> str:
    """Return the raw ssh-keyscan output for a host."""
    keyscan = sh.Command("ssh-keyscan")
    with open(os.devnull, "rb") as devnull:
        try:
            proc = keyscan("-H", host, _in=devnull, _return_cmd=True)
        except sh.ErrorReturnCode as err:
            _report_keyscan_errors(err.stderr)
            raise SSHFailed(f"failed to run ssh-keyscan -H {host}") from err

    _report_keyscan_errors(proc.stderr)
    return proc.stdout.decode()


def _report_keyscan_errors(stderr: bytes) -> None:
    for line in stderr.decode(errors="replace").splitlines():
        if line and not line.startswith("#"):
            helper.print_warning(line)


def query_keys(host: str) -> list[PublicKey]:
    return load_keys_from_string(ssh_keyscan_host(host))


def valid(
    pinned_keys: typing.Iterable[PublicKey],
    actual_keys: typing.Iterable[PublicKey],
) -> bool:
    return not set(pinned_keys).isdisjoint(actual_keys)


### SSH client configuration ###


def default_ssh_config_path() -> pathlib.Path:
    return pathlib.Path(invocation.home_directory()) / ".ssh" / "config"


def alias_for(target_name: str) -> str:
    return f"{ALIAS_PREFIX}{target_name}"


def _read_config_lines(path: pathlib.Path) -> list[str]:
    if not path.is_file():
        return []
    return path.read_text().splitlines()


def _write_config_lines(path: pathlib.Path, lines: list[str]) -> None:
    # Written next to the file and moved over it, a failed write leaves it intact
    handle = tempfile.NamedTemporaryFile(
        "w", dir=path.parent, prefix=f".{path.name}-", delete=False
    )
    try:
        with handle:
            if lines:
                handle.write("\n".join(lines) + "\n")
        os.chmod(handle.name, 0o600)
        os.replace(handle.name, path)
    except OSError:
        os.unlink(handle.name)
        raise


def _remove_alias(lines: list[str], alias: str) -> list[str]:
    lines = list(lines)
    while True:
        host_line = next(
            (i for i, line in enumerate(lines) if line.strip() == f"Host {alias}"),
            None,
        )
        if host_line is None:
            break

        # The entry's body runs until the next non-indented line
        end = host_line + 1
        while end < len(lines) and (
            not lines[end].strip() or lines[end][0].isspace()
        ):
            end += 1

        # Comments right above the entry belong to it
        start = host_line
        while start > 0 and lines[start - 1].startswith("#"):
            start -= 1

        # So does the blank separator setup_config puts before a last entry
        if end == len(lines) and start > 0 and not lines[start - 1].strip():
            start -= 1

        del lines[start:end]

    return lines


def cleanup_config(
    target_name: str, ssh_config_path: typing.Optional[pathlib.Path] = None
) -> list[str]:
    """Remove the entry for this target from the SSH configuration.

    Returns the remaining lines. The file is only rewritten if it exists."""
    path = ssh_config_path or default_ssh_config_path()
    lines = _remove_alias(_read_config_lines(path), alias_for(target_name))
    if path.is_file():
        _write_config_lines(path, lines)
    return lines


def setup_config(
    target_name: str,
    username: str,
    hostname: str,
    key_file: typing.Union[str, pathlib.Path],
    ssh_config_path: typing.Optional[pathlib.Path] = None,
) -> str:
    """Add a Host entry for this target and return its alias.

    An existing entry for the same target is replaced."""
    path = ssh_config_path or default_ssh_config_path()
    alias = alias_for(target_name)

    lines = _remove_alias(_read_config_lines(path), alias)
    if lines:
        lines.append("")
    lines += [
        CONFIG_MARKER,
        f"Host {alias}",
        f"  User {username}",
        f"  Hostname {hostname}",
        f"  UserKnownHostsFile {key_file}",
    ]

    path.parent.mkdir(parents=True, exist_ok=True)
    path.parent.chmod(0o700)
    _write_config_lines(path, lines)
    return alias


@contextlib.contextmanager
def session(
    target_name: str,
    username: str,
    hostname: str,
    key_file: typing.Union[str, pathlib.Path],
    ssh_config_path: typing.Optional[pathlib.Path] = None,
) -> typing.Iterator[str]:
    """Keep a Host entry in the SSH configuration for the duration of the block.

    The entry is removed on every exit path. A failing removal is reported
    but never replaces the outcome of the block."""
    path = ssh_config_path or default_ssh_config_path()
    alias = setup_config(target_name, username, hostname, key_file, path)
    try:
        yield alias
    finally:
        try:
            cleanup_config(target_name, path)
        except OSError as err:
            helper.print_warning(
                f"Warning: failed to remove '{alias}' from {path}: {err}"
            )


class SSHHost:
    """Connection parameters and pinned keys of one SSH-based target."""

    def __init__(
        self,
        target_name: str,
        host: str,
        username: str,
        key_path: pathlib.Path,
    ):
        self.target_name = target_name
        self.host = host
        self.username = username
        self.key_path = key_path

        if key_path.is_file():
            self.host_keys = frozenset(load_keys_from_file(key_path))
        else:
            helper.print_warning(
                f"Warning: no pinned host keys for target '{target_name}' at {key_path}, the target will not be available"
            )
            self.host_keys = frozenset()

    def valid(self, actual_keys: typing.Iterable[PublicKey]) -> bool:
        return valid(self.host_keys, actual_keys)

    def available(self) -> bool:
        try:
            actual_keys = query_keys(self.host)
        except SSHFailed as err:
            helper.print_warning(f"Warning: {err}")
            return False
        return self.valid(actual_keys)

    def session(
        self, ssh_config_path: typing.Optional[pathlib.Path] = None
    ) -> typing.ContextManager[str]:
        return session(
            self.target_name,
            self.username,
            self.host,
            self.key_path,
            ssh_config_path,
        )
