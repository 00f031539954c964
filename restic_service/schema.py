import typing


class ForgetDef(typing.TypedDict, total=False):
    prune: bool
    tags: int
    hourly: int
    daily: int
    weekly: int
    monthly: int
    yearly: int


class TargetDef(typing.TypedDict, total=False):
    name: str
    type: str
    bandwidth_limit: typing.Union[int, str]
    io_class: int
    io_priority: int
    cpu_priority: typing.Optional[int]

    # SSH-based targets
    host: str
    username: str

    # B2-based targets
    bucket: str
    path: str
    id: str
    key: str

    # restic-based targets
    password: str
    includes: list[str]
    excludes: list[str]
    one_filesystem: bool
    forget: ForgetDef

    # restic-file
    dest: str

    # rclone-b2
    src: str
    filters: list[str]

    # rsync
    source: str
    target: str
    one_file_system: bool


class MasterServiceConfiguration(typing.TypedDict, total=False):
    period: int
    bandwidth_limit: typing.Union[int, str, None]
    tools: dict[str, str]
    auto_update: dict[str, bool]
    targets: list[TargetDef]
