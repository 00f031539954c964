# Stdlib imports
import datetime
import pathlib
import typing

# Vendor imports
import apscheduler.executors.pool
import apscheduler.schedulers.blocking
import apscheduler.triggers.interval
import sh
import typer

# Local imports
from . import config as applicationConfig, helper, ssh_keys, target as targetModule


# Create a subclass of the context with correct typing of the service config object
class ServiceCLIContext(typer.Context):
    obj: applicationConfig.Configuration


# Initialize the typer app
cli = typer.Typer()


# Main method that loads the configuration and makes it available to all commands
@cli.callback()
def cli_main(
    ctx: ServiceCLIContext,
    conf: pathlib.Path = typer.Option(
        applicationConfig.default_config_dir,
        "--conf",
        "-c",
        envvar="RESTIC_SERVICE_CONF",
        help="Path to the configuration directory, holding conf.yml and the pinned host keys.",
    ),
):
    try:
        ctx.obj = applicationConfig.load_from_dir(conf)
    except applicationConfig.InvalidConfigurationFile as err:
        helper.print_error(f"Error: invalid configuration: {err}")


def target_available(target: targetModule.Target) -> bool:
    # A missing executable (e.g. ssh-keyscan) only takes this target out
    try:
        return target.available()
    except (sh.CommandNotFound, applicationConfig.ToolUnavailable) as err:
        helper.print_warning(f"Error: cannot check '{target.name}': {err}")
        return False


def each_selected_and_available_target(
    conf: applicationConfig.Configuration, names: list[str]
) -> typing.Generator[targetModule.Target, None, None]:
    targets = conf.targets()
    if not targets:
        helper.print_warning(
            f"Warning: no targets defined in '{conf.conf_path}'"
        )

    for target in targets:
        if names and target.name not in names:
            continue
        if not target_available(target):
            helper.print_line(f"{target.name} is not available")
            continue
        yield target


def run_target_operation(
    target: targetModule.Target,
    description: str,
    operation: typing.Callable[[], bool],
) -> bool:
    helper.print()
    helper.print_line(f"{datetime.datetime.now()} - {description} {target.name}")

    # A broken deployment for one target should not stop the other targets
    try:
        success = operation()
    except (sh.CommandNotFound, applicationConfig.ToolUnavailable) as err:
        helper.print_warning(f"Error: cannot run '{target.name}': {err}")
        return False

    if success:
        helper.print_nested_line(f"[green]{target.name} finished")
    else:
        helper.print_nested_line(f"[red]{target.name} failed")
    return success


def run_sync(conf: applicationConfig.Configuration, names: list[str]) -> None:
    for target in each_selected_and_available_target(conf, names):
        run_target_operation(target, "Synchronizing", target.synchronize)


def run_forget(conf: applicationConfig.Configuration, names: list[str]) -> None:
    for target in each_selected_and_available_target(conf, names):
        if not hasattr(target, "forget"):
            helper.print_line(f"{target.name} does not support forget")
            continue
        run_target_operation(target, "Running forget pass on", target.forget)


def run_pass(conf: applicationConfig.Configuration, names: list[str]) -> None:
    helper.print_line(
        f"{datetime.datetime.now()} Starting automatic synchronization pass"
    )
    run_sync(conf, names)
    run_forget(conf, names)
    helper.print_line(
        f"{datetime.datetime.now()} Finished automatic synchronization pass"
    )


@cli.command(name="whereami", help="Check which backup targets are available.")
def cli_whereami(ctx: ServiceCLIContext):
    conf = ctx.obj
    for target in conf.targets():
        helper.print_kv(target.name, "yes" if target_available(target) else "no")


@cli.command(name="list", help="List the targets defined in the configuration.")
def cli_list(ctx: ServiceCLIContext):
    conf = ctx.obj

    helper.print_kv("Period", f"{conf.period}s")
    helper.print_kv("Bandwidth limit", helper.human_bandwidth(conf.bandwidth_limit))

    helper.print("Targets:")
    for target in conf.targets():
        helper.print(
            f"  - {target.name} ({target.type_name}, {helper.human_bandwidth(target.bandwidth_limit)})"
        )


@cli.command(name="sync", help="Synchronize all targets, or only the given ones.")
def cli_sync(
    ctx: ServiceCLIContext,
    targets: typing.Optional[list[str]] = typer.Argument(
        None, help="Names of the targets to synchronize."
    ),
):
    run_sync(ctx.obj, targets or [])


@cli.command(
    name="forget",
    help="Apply the retention policy of all targets, or only of the given ones.",
)
def cli_forget(
    ctx: ServiceCLIContext,
    targets: typing.Optional[list[str]] = typer.Argument(
        None, help="Names of the targets to apply retention to."
    ),
):
    run_forget(ctx.obj, targets or [])


@cli.command(
    name="auto",
    help="Periodically synchronize and apply retention. Pass target names to restrict to these.",
)
def cli_auto(
    ctx: ServiceCLIContext,
    targets: typing.Optional[list[str]] = typer.Argument(
        None, help="Names of the targets to process."
    ),
):
    conf = ctx.obj

    scheduler = apscheduler.schedulers.blocking.BlockingScheduler(
        executors={
            "default": apscheduler.executors.pool.ThreadPoolExecutor(1)
        },
        job_defaults={
            "misfire_grace_time": None,
            "coalesce": True,
            "max_instances": 1,
        },
    )
    scheduler.add_job(
        id="restic-service",
        trigger=apscheduler.triggers.interval.IntervalTrigger(
            seconds=conf.period
        ),
        next_run_time=datetime.datetime.now(),
        func=run_pass,
        args=[conf, targets or []],
    )

    try:
        helper.print_warning(f"Starting scheduler, period is {conf.period}s...")
        scheduler.start()
    except KeyboardInterrupt:
        helper.print_warning("Scheduler stopping...")
        exit()


@cli.command(
    name="trust",
    help="Pin the keys currently offered by the host of an SSH-based target.",
)
def cli_trust(
    ctx: ServiceCLIContext,
    name: str = typer.Argument(..., help="Name of the target."),
):
    conf = ctx.obj

    try:
        target = conf.target_by_name(name)
    except applicationConfig.NoSuchTarget as err:
        helper.print_error(f"Error: {err}")

    ssh_host = getattr(target, "ssh", None)
    if not isinstance(ssh_host, ssh_keys.SSHHost):
        helper.print_error(f"Error: target '{name}' does not connect over SSH")

    try:
        keys = ssh_keys.query_keys(ssh_host.host)
    except ssh_keys.SSHFailed as err:
        helper.print_error(f"Error: {err}")
    if not keys:
        helper.print_error(f"Error: '{ssh_host.host}' did not offer any key")

    ssh_keys.save_keys_to_file(ssh_host.key_path, keys, ssh_host.host)
    helper.print_line(f"Pinned {len(keys)} key(s) in {ssh_host.key_path}")
    for key in keys:
        helper.print_nested_line(key.type)
