# Stdlib imports
import os
import pathlib
import typing

# Vendor imports
import mergedeep
import pydantic
import yaml

# Local imports
from . import helper, model, schema, target

# Name of the configuration file inside the configuration directory
CONFIG_FILE_NAME = "conf.yml"

# Default configuration directory, holds the configuration file and the key files
default_config_dir = pathlib.Path("/etc/restic-service")

DEFAULT_PERIOD = 3600

TOOLS = ("restic", "rclone")

TARGET_CLASS_FROM_TYPE: dict[str, type[target.Target]] = {
    target_class.type_name: target_class for target_class in target.TARGET_CLASSES
}


class InvalidConfigurationFile(ValueError):
    pass


class NoSuchTarget(RuntimeError):
    pass


class ToolUnavailable(RuntimeError):
    pass


def default_conf() -> schema.MasterServiceConfiguration:
    return {
        "targets": [],
        "period": DEFAULT_PERIOD,
        "bandwidth_limit": None,
        "tools": {},
        "auto_update": {},
    }


def parse_bandwidth_limit(limit: typing.Union[int, str]) -> int:
    try:
        return model.parse_bandwidth_limit(limit)
    except ValueError as err:
        raise InvalidConfigurationFile(str(err)) from err


def target_class_from_type(type_name: str) -> type[target.Target]:
    if target_class := TARGET_CLASS_FROM_TYPE.get(type_name):
        return target_class

    raise InvalidConfigurationFile(
        f"target type {type_name} does not exist, available targets: {', '.join(sorted(TARGET_CLASS_FROM_TYPE))}"
    )


def _validation_message(err: pydantic.ValidationError, name: str) -> str:
    """Describe the first problem pydantic found in a target entry."""
    error = err.errors()[0]
    field = ".".join(str(part) for part in error["loc"])

    if error["type"] == "missing":
        return f"missing '{field}' field in target"
    if error["type"] == "value_error":
        return f"target '{name}': {error['ctx']['error']}"
    return f"invalid '{field}' field in target '{name}': {error['msg']}"


def normalize(
    raw: typing.Optional[schema.MasterServiceConfiguration],
) -> schema.MasterServiceConfiguration:
    """Validate a configuration document and fill in its defaults.

    Returns a new document; the argument is left untouched."""
    normalized = mergedeep.merge({}, default_conf(), raw or {})

    # Keys present but left empty in the YAML file
    for key in ("targets", "tools", "auto_update"):
        if normalized[key] is None:
            normalized[key] = default_conf()[key]

    try:
        period = int(normalized["period"])
    except (TypeError, ValueError):
        raise InvalidConfigurationFile(
            f"invalid period '{normalized['period']}', expected a number of seconds"
        ) from None
    if period <= 0:
        raise InvalidConfigurationFile(
            f"invalid period '{period}', expected a positive number of seconds"
        )
    normalized["period"] = period

    if normalized["bandwidth_limit"] is not None:
        normalized["bandwidth_limit"] = parse_bandwidth_limit(
            normalized["bandwidth_limit"]
        )

    if not isinstance(normalized["tools"], dict):
        raise InvalidConfigurationFile("'tools' must be a mapping")
    for tool_name in TOOLS:
        normalized["tools"][tool_name] = (
            normalized["tools"].get(tool_name) or tool_name
        )

    if not isinstance(normalized["auto_update"], dict):
        raise InvalidConfigurationFile("'auto_update' must be a mapping")

    if not isinstance(normalized["targets"], list):
        raise InvalidConfigurationFile("'targets' must be a list")

    target_names: list[str] = []
    normalized_targets = []
    for entry in normalized["targets"]:
        if not isinstance(entry, dict):
            raise InvalidConfigurationFile(f"invalid target entry '{entry}'")
        if entry.get("name") is None:
            raise InvalidConfigurationFile("missing 'name' field in target")
        if entry.get("type") is None:
            raise InvalidConfigurationFile("missing 'type' field in target")

        target_class = target_class_from_type(entry["type"])

        name = str(entry["name"])
        if name in target_names:
            raise InvalidConfigurationFile(f"duplicate target name '{name}'")

        try:
            normalized_targets.append(
                target_class.normalize({**entry, "name": name})
            )
        except pydantic.ValidationError as err:
            raise InvalidConfigurationFile(
                _validation_message(err, name)
            ) from err
        target_names.append(name)

    normalized["targets"] = normalized_targets
    return normalized


def load(path: pathlib.Path) -> "Configuration":
    """Load the configuration file at path.

    A missing file gives an empty configuration."""
    path = path.expanduser()
    if not path.is_file():
        return Configuration(pathlib.Path(""))

    with path.open("r") as handle:
        try:
            parsed = yaml.load(handle, yaml.SafeLoader)
        except yaml.YAMLError as err:
            raise InvalidConfigurationFile(
                f"cannot parse '{path}': {err}"
            ) from err

    if parsed is not None and not isinstance(parsed, dict):
        raise InvalidConfigurationFile(
            f"'{path}' does not contain a configuration mapping"
        )

    normalized = normalize(parsed)
    conf = Configuration(path.parent)
    conf.load_from_dict(normalized)
    return conf


def load_from_dir(config_dir: pathlib.Path) -> "Configuration":
    return load(config_dir.expanduser() / CONFIG_FILE_NAME)


class Configuration:
    """The service configuration: global policy, tools and targets."""

    def __init__(self, conf_path: pathlib.Path):
        self.conf_path = conf_path
        self.period = DEFAULT_PERIOD
        self.bandwidth_limit: typing.Optional[int] = None

        self.auto_update_restic_service = False
        self.auto_update_restic = False
        self.auto_update_rclone = False

        self._targets: dict[str, target.Target] = {}
        self._tools: dict[str, tuple[pathlib.Path, bool]] = {}
        for tool_name in TOOLS:
            tool_path = self.find_in_path(tool_name)
            if tool_path is None:
                self._tools[tool_name] = (pathlib.Path(tool_name), False)
            else:
                self._tools[tool_name] = (tool_path, True)

    ### Targets ###

    def conf_keys_path_for(self, target_name: str) -> pathlib.Path:
        return self.conf_path / "keys" / f"{target_name}.keys"

    def register_target(self, new_target: target.Target) -> None:
        self._targets[new_target.name] = new_target

    def target_by_name(self, name: str) -> target.Target:
        if not (found := self._targets.get(name)):
            raise NoSuchTarget(f"no target named '{name}'")
        return found

    def targets(self) -> list[target.Target]:
        return list(self._targets.values())

    ### Tools ###

    def find_in_path(self, name: typing.Union[str, pathlib.Path]) -> typing.Optional[pathlib.Path]:
        for entry in os.environ.get("PATH", "").split(os.pathsep):
            if not entry:
                continue
            candidate = pathlib.Path(entry) / name
            if candidate.is_file():
                return candidate
        return None

    def load_tools(self, tools: dict[str, str]) -> None:
        for tool_name in TOOLS:
            tool_path = pathlib.Path(tools[tool_name]).expanduser()
            if not tool_path.is_absolute():
                resolved = self.find_in_path(tool_path)
                if resolved is None:
                    helper.print_warning(
                        f"Warning: cannot find path to {tool_name}"
                    )
                    self._tools[tool_name] = (tool_path, False)
                    continue
                tool_path = resolved

            exists = tool_path.is_file()
            if not exists:
                helper.print_warning(f"Warning: {tool_path} does not exist")
            self._tools[tool_name] = (tool_path, exists)

    def tool_available(self, tool_name: str) -> bool:
        _, available = self._tools.get(tool_name, (None, False))
        return available

    def tool_path(
        self, tool_name: str, only_if_present: bool = True
    ) -> pathlib.Path:
        if tool_name not in self._tools:
            raise ToolUnavailable(f"could not find '{tool_name}'")

        tool_path, available = self._tools[tool_name]
        if not available and only_if_present:
            raise ToolUnavailable(
                f"'{tool_name}' is not available, provide its path in the 'tools' section of the configuration"
            )
        return tool_path

    ### Loading ###

    def load_from_dict(
        self, normalized: schema.MasterServiceConfiguration
    ) -> None:
        """Apply a document returned by normalize() to this configuration."""
        self.load_tools(normalized["tools"])
        self.period = normalized["period"]
        self.bandwidth_limit = normalized["bandwidth_limit"]

        for update_target, do_update in normalized["auto_update"].items():
            if update_target == "restic-service":
                self.auto_update_restic_service = bool(do_update)
            elif update_target == "restic":
                self.auto_update_restic = bool(do_update)
            elif update_target == "rclone":
                self.auto_update_rclone = bool(do_update)
            else:
                helper.print_warning(
                    f"Warning: unknown auto_update entry '{update_target}'"
                )

        for entry in normalized["targets"]:
            target_class = target_class_from_type(entry["type"])
            new_target = target_class(entry["name"])
            new_target.setup_from_conf(self, entry)
            self.register_target(new_target)
