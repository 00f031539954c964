# Stdlib imports
import os
import sys
import typing

# Vendor imports
import humanize
import rich
import sh


def print(*args, file=None):
    rich.print(*args, file=file)


def print_line(*args, file=None):
    print("-" * 8, *args, file=file)


def print_nested_line(*args):
    print("-" * 12, *args)


def print_warning(message: str):
    print_line(f"[yellow]{message}", file=sys.stderr)


def print_error(message: str):
    print("-" * 8, f"[red]{message}", file=sys.stderr)
    exit(1)


def print_kv(key: str, value: str = ""):
    print(f"[yellow]{key}[/]: {value}")


def human_readable(num):
    return humanize.naturalsize(num, binary=False)


def human_bandwidth(limit: typing.Optional[int]) -> str:
    if limit is None:
        return "unlimited"
    return f"{human_readable(limit)}/s"


def run_command_politely(
    command: sh.Command,
    args: list[typing.Any],
    env: dict = {},
) -> int:
    """Run a command to completion with stdin closed, passing its output
    through, and return its exit code.

    Non-zero exits are returned, not raised. sh.CommandNotFound is raised
    when the command is created, before this is reached."""
    with open(os.devnull, "rb") as devnull:
        running_proc = command(
            *args,
            _bg=True,
            _bg_exc=False,
            _env=env,
            _in=devnull,
            _out=sys.stdout,
            _err=sys.stderr,
        )

        # The running process should not be a string
        assert isinstance(running_proc, sh.RunningCommand)

        # Wait for it to finish and catch any keyboard interrupts
        try:
            running_proc.wait()
        except sh.ErrorReturnCode as err:
            return err.exit_code
        except KeyboardInterrupt:
            print("---------- Keyboard interrupt detected")
            if running_proc.is_alive():
                print("---------- Killing the running process...")
                running_proc.kill()
            raise

    return running_proc.exit_code
