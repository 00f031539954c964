### stdlib imports
import pathlib
import re
import typing

### vendor imports
import pydantic

BANDWIDTH_SCALES = {
    None: 1,
    "k": 1_000,
    "m": 1_000_000,
    "g": 1_000_000_000,
}


def parse_bandwidth_limit(limit: typing.Union[int, str]) -> int:
    """Convert a bandwidth limit into bytes per second.

    Plain integers are returned as-is, strings may carry a k, M or G suffix
    (case-insensitive, optionally separated from the number by spaces)."""
    if isinstance(limit, int) and not isinstance(limit, bool):
        return limit

    match = re.fullmatch(r"\s*(\d+)\s*([kmg])?\s*", str(limit).lower())
    if not match:
        raise ValueError(
            f"cannot interpret '{limit}' as a valid bandwidth limit, give a plain number in bytes or use the k, M and G suffixes"
        )
    return int(match.group(1)) * BANDWIDTH_SCALES[match.group(2)]


BandwidthLimit = typing.Annotated[
    int, pydantic.BeforeValidator(parse_bandwidth_limit)
]


class ResourcePolicy(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    # ionice scheduling class, 3 is "idle"
    io_class: int = pydantic.Field(3, ge=0, le=3)
    io_priority: int = pydantic.Field(0, ge=0, le=7)

    # niceness, null disables the nice wrapper
    cpu_priority: typing.Optional[int] = pydantic.Field(19, ge=-20, le=19)


class ForgetPolicy(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    prune: bool = True

    tags: typing.Optional[int] = None
    hourly: typing.Optional[int] = None
    daily: typing.Optional[int] = None
    weekly: typing.Optional[int] = None
    monthly: typing.Optional[int] = None
    yearly: typing.Optional[int] = None


class B2Account(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    id: str
    key: str

    def env(self) -> dict[str, str]:
        return {"B2_ACCOUNT_ID": self.id, "B2_ACCOUNT_KEY": self.key}


### Per-variant target configurations ###


class TargetConfig(ResourcePolicy):
    name: str
    type: str
    bandwidth_limit: typing.Optional[BandwidthLimit] = None

    def resources(self) -> ResourcePolicy:
        return ResourcePolicy(
            **self.model_dump(include=set(ResourcePolicy.model_fields))
        )


class SSHTargetConfig(TargetConfig):
    host: str
    username: str


class B2TargetConfig(TargetConfig):
    bucket: str
    path: str
    id: str
    key: str

    def account(self) -> B2Account:
        return B2Account(id=self.id, key=self.key)


class ResticTargetConfig(TargetConfig):
    password: str
    includes: list[str] = pydantic.Field(
        default_factory=list, validate_default=True
    )
    excludes: list[str] = []
    one_filesystem: bool = False
    forget: ForgetPolicy = ForgetPolicy()

    @pydantic.field_validator("includes")
    @classmethod
    def check_includes(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("nothing to backup")
        return value


class ResticB2TargetConfig(ResticTargetConfig, B2TargetConfig):
    pass


class ResticSFTPTargetConfig(ResticTargetConfig, SSHTargetConfig):
    path: str


class ResticFileTargetConfig(ResticTargetConfig):
    dest: str


class RcloneB2TargetConfig(B2TargetConfig):
    src: str
    filters: list[str] = []

    @pydantic.field_validator("src")
    @classmethod
    def check_src(cls, value: str) -> str:
        if not pathlib.Path(value).is_dir():
            raise ValueError(f"provided rclone-b2 source {value} does not exist")
        return value


class RsyncTargetConfig(SSHTargetConfig):
    source: str
    target: str
    one_file_system: bool = False
    filters: list[str] = []
