### stdlib imports
import os
import pathlib
import shlex
import shutil
import typing

### vendor imports
import sh

### local imports
from . import helper, model

# Home directory used when the service runs without one (e.g. from init)
FALLBACK_HOME = "/root"


class Invocation(typing.NamedTuple):
    executable: str
    args: list[str]
    env: dict[str, str]

    def argv(self) -> list[str]:
        return [self.executable, *self.args]


def home_directory() -> str:
    return os.environ.get("HOME") or FALLBACK_HOME


def execution_env(overlay: typing.Optional[dict[str, str]] = None) -> dict[str, str]:
    """Environment for a single child process.

    Built as a fresh dict; the process-wide environment is left untouched."""
    return {**dict(os.environ), "HOME": home_directory(), **(overlay or {})}


def resolve_executable(name: str) -> str:
    """Full path of an executable found in PATH, raises sh.CommandNotFound."""
    path = shutil.which(name)
    if path is None:
        raise sh.CommandNotFound(name)
    return path


def priority_prefix(resources: model.ResourcePolicy) -> list[str]:
    prefix: list[str] = []

    if resources.io_class is not None:
        prefix += ["ionice", "-c", str(resources.io_class)]
        # The idle class has no priority levels
        if resources.io_class != 3:
            prefix += ["-n", str(resources.io_priority)]

    if resources.cpu_priority is not None:
        prefix += ["nice", "-n", str(resources.cpu_priority)]

    return prefix


def build(
    tool: typing.Union[str, pathlib.Path],
    args: list[typing.Any],
    resources: model.ResourcePolicy,
    env: typing.Optional[dict[str, str]] = None,
) -> Invocation:
    command = [*priority_prefix(resources), str(tool), *(str(arg) for arg in args)]
    return Invocation(command[0], command[1:], execution_env(env))


def restic_bandwidth_args(limit: typing.Optional[int]) -> list[str]:
    # restic takes KiB/s
    if limit is None:
        return []
    limit_kib = str(limit // 1000)
    return ["--limit-upload", limit_kib, "--limit-download", limit_kib]


def rclone_bandwidth_args(limit: typing.Optional[int]) -> list[str]:
    if limit is None:
        return []
    return ["--bwlimit", str(limit)]


def rsync_bandwidth_args(limit: typing.Optional[int]) -> list[str]:
    if limit is None:
        return []
    return [f"--bwlimit={limit // 1000}"]


def exclude_args(excludes: list[str]) -> typing.Generator[str, None, None]:
    for entry in excludes:
        yield "--exclude"
        yield entry


# Retention periods in the order they are passed, mapped to restic's flag names
FORGET_PERIODS = {
    "tags": "tag",
    "hourly": "hourly",
    "daily": "daily",
    "weekly": "weekly",
    "monthly": "monthly",
    "yearly": "yearly",
}


def forget_args(policy: model.ForgetPolicy) -> list[str]:
    args: list[str] = []
    for period, flag in FORGET_PERIODS.items():
        value = getattr(policy, period)
        if value is not None:
            args += [f"--keep-{flag}", str(value)]

    if policy.prune:
        args.append("--prune")

    return args


def run(invocation: Invocation) -> bool:
    """Run the invocation and report whether the tool exited with 0.

    A missing executable raises sh.CommandNotFound."""
    command = sh.Command(invocation.executable)
    exit_code = helper.run_command_politely(
        command, invocation.args, invocation.env
    )
    if exit_code != 0:
        helper.print_warning(
            f"Command '{shlex.join(invocation.argv())}' exited with code {exit_code}"
        )
    return exit_code == 0
