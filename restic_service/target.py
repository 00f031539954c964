### stdlib imports
import pathlib
import tempfile
import typing

### local imports
from . import helper, invocation, model, ssh_keys

if typing.TYPE_CHECKING:
    from .config import Configuration


class Target:
    type_name: typing.ClassVar[str]
    config_model: typing.ClassVar[type[model.TargetConfig]] = model.TargetConfig

    def __init__(self, name: str):
        self.name = name

        self.conf: typing.Optional["Configuration"] = None
        self.settings: typing.Optional[model.TargetConfig] = None
        self.resources = model.ResourcePolicy()
        self.bandwidth_limit: typing.Optional[int] = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"

    @classmethod
    def normalize(cls, entry: dict) -> dict:
        """Validate a target entry and fill in its defaults.

        Raises pydantic.ValidationError, which the configuration turns into
        an InvalidConfigurationFile."""
        return cls.config_model(**entry).model_dump()

    def setup_from_conf(self, conf: "Configuration", entry: dict) -> None:
        self.conf = conf
        self.settings = self.config_model(**entry)
        self.resources = self.settings.resources()

        # A limit on the target overrides the global one
        if self.settings.bandwidth_limit is not None:
            self.bandwidth_limit = self.settings.bandwidth_limit
        else:
            self.bandwidth_limit = conf.bandwidth_limit

    def available(self) -> bool:
        raise NotImplementedError

    def synchronize(self) -> bool:
        raise NotImplementedError


class ResticRepository:
    """Builds restic invocations for one target's backup settings."""

    def __init__(
        self,
        conf: "Configuration",
        settings: model.ResticTargetConfig,
        resources: model.ResourcePolicy,
        bandwidth_limit: typing.Optional[int],
    ):
        self.conf = conf
        self.settings = settings
        self.resources = resources
        self.bandwidth_limit = bandwidth_limit

    def command(
        self,
        repository: str,
        args: list[str],
        env: typing.Optional[dict[str, str]] = None,
    ) -> invocation.Invocation:
        return invocation.build(
            self.conf.tool_path("restic"),
            [
                *invocation.restic_bandwidth_args(self.bandwidth_limit),
                "-r",
                repository,
                *args,
            ],
            self.resources,
            {"RESTIC_PASSWORD": self.settings.password, **(env or {})},
        )

    def backup(
        self, repository: str, env: typing.Optional[dict[str, str]] = None
    ) -> invocation.Invocation:
        args = ["backup"]
        if self.settings.one_filesystem:
            args.append("--one-file-system")
        args += invocation.exclude_args(self.settings.excludes)

        # Includes are positional and come last
        args += self.settings.includes
        return self.command(repository, args, env)

    def forget(
        self, repository: str, env: typing.Optional[dict[str, str]] = None
    ) -> invocation.Invocation:
        args = ["forget", *invocation.forget_args(self.settings.forget)]
        return self.command(repository, args, env)


class ResticTarget(Target):
    config_model = model.ResticTargetConfig

    def __init__(self, name: str):
        super().__init__(name)
        self.restic: typing.Optional[ResticRepository] = None

    def setup_from_conf(self, conf: "Configuration", entry: dict) -> None:
        super().setup_from_conf(conf, entry)
        self.restic = ResticRepository(
            conf, self.settings, self.resources, self.bandwidth_limit
        )

    def run_restic(
        self,
        operation: typing.Callable[..., invocation.Invocation],
    ) -> bool:
        raise NotImplementedError

    def synchronize(self) -> bool:
        return self.run_restic(self.restic.backup)

    def forget(self) -> bool:
        return self.run_restic(self.restic.forget)


class ResticB2Target(ResticTarget):
    type_name = "restic-b2"
    config_model = model.ResticB2TargetConfig

    def setup_from_conf(self, conf: "Configuration", entry: dict) -> None:
        super().setup_from_conf(conf, entry)
        self.account = self.settings.account()

    def repository(self) -> str:
        return f"b2:{self.settings.bucket}:{self.settings.path}"

    def available(self) -> bool:
        return True

    def run_restic(self, operation) -> bool:
        return invocation.run(operation(self.repository(), self.account.env()))


class ResticSFTPTarget(ResticTarget):
    type_name = "restic-sftp"
    config_model = model.ResticSFTPTargetConfig

    def setup_from_conf(self, conf: "Configuration", entry: dict) -> None:
        super().setup_from_conf(conf, entry)
        self.ssh = ssh_keys.SSHHost(
            self.name,
            self.settings.host,
            self.settings.username,
            conf.conf_keys_path_for(self.name),
        )

    def repository(self, alias: str) -> str:
        return f"sftp:{alias}:{self.settings.path}"

    def available(self) -> bool:
        return self.ssh.available()

    def run_restic(self, operation) -> bool:
        if not self.ssh.available():
            helper.print_warning(untrusted_message(self.name, self.ssh.host))
            return False

        with self.ssh.session() as alias:
            return invocation.run(operation(self.repository(alias)))


class ResticFileTarget(ResticTarget):
    type_name = "restic-file"
    config_model = model.ResticFileTargetConfig

    def setup_from_conf(self, conf: "Configuration", entry: dict) -> None:
        super().setup_from_conf(conf, entry)
        self.dest = pathlib.Path(self.settings.dest)

    def available(self) -> bool:
        return self.dest.is_dir()

    def run_restic(self, operation) -> bool:
        return invocation.run(operation(str(self.dest)))


class RcloneB2Target(Target):
    """Mirrors a directory into a B2 bucket with rclone."""

    type_name = "rclone-b2"
    config_model = model.RcloneB2TargetConfig

    # Name of the remote in the generated rclone configuration
    REMOTE_NAME = "restic-service"

    def setup_from_conf(self, conf: "Configuration", entry: dict) -> None:
        super().setup_from_conf(conf, entry)
        self.account = self.settings.account()

    def available(self) -> bool:
        return True

    def rclone_config(self) -> str:
        return (
            f"[{self.REMOTE_NAME}]\n"
            "type = b2\n"
            f"account = {self.account.id}\n"
            f"key = {self.account.key}\n"
            "endpoint =\n"
        )

    def sync_invocation(
        self, config_path: typing.Union[str, pathlib.Path]
    ) -> invocation.Invocation:
        args = [
            "--transfers",
            "16",
            "--config",
            str(config_path),
            *invocation.rclone_bandwidth_args(self.bandwidth_limit),
        ]
        for entry in self.settings.filters:
            args += ["--filter", entry]
        args += [
            "sync",
            self.settings.src,
            f"{self.REMOTE_NAME}:{self.settings.bucket}/{self.settings.path}",
        ]
        return invocation.build(
            self.conf.tool_path("rclone"), args, self.resources
        )

    def synchronize(self) -> bool:
        # The account key only ever lives in this private (0600) file
        config_dir = self.conf.conf_path if self.conf.conf_path.is_dir() else None
        with tempfile.NamedTemporaryFile(
            "w", prefix=f"rclone-{self.name}-", suffix=".conf", dir=config_dir
        ) as handle:
            handle.write(self.rclone_config())
            handle.flush()
            return invocation.run(self.sync_invocation(handle.name))


class RsyncTarget(Target):
    """Mirrors a directory to an SSH host with rsync."""

    type_name = "rsync"
    config_model = model.RsyncTargetConfig

    def setup_from_conf(self, conf: "Configuration", entry: dict) -> None:
        super().setup_from_conf(conf, entry)
        self.ssh = ssh_keys.SSHHost(
            self.name,
            self.settings.host,
            self.settings.username,
            conf.conf_keys_path_for(self.name),
        )

    def available(self) -> bool:
        return self.ssh.available()

    def sync_invocation(self, alias: str) -> invocation.Invocation:
        args = ["-a", "--delete-during", "--delete-excluded"]
        args += [f"--filter={entry}" for entry in self.settings.filters]
        if self.settings.one_file_system:
            args.append("--one-file-system")
        args += invocation.rsync_bandwidth_args(self.bandwidth_limit)
        args += [self.settings.source, f"{alias}:{self.settings.target}"]
        return invocation.build(
            invocation.resolve_executable("rsync"), args, self.resources
        )

    def synchronize(self) -> bool:
        if not self.ssh.available():
            helper.print_warning(untrusted_message(self.name, self.ssh.host))
            return False

        with self.ssh.session() as alias:
            return invocation.run(self.sync_invocation(alias))


def untrusted_message(name: str, host: str) -> str:
    return f"Warning: keys offered by '{host}' do not match the keys pinned for target '{name}', skipping"


TARGET_CLASSES: tuple[type[Target], ...] = (
    ResticB2Target,
    ResticSFTPTarget,
    ResticFileTarget,
    RcloneB2Target,
    RsyncTarget,
)
