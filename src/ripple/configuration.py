import copy
import os
import re
from ast import literal_eval
from collections.abc import MutableMapping
from typing import Any, Iterator, Optional, Tuple, Union, cast

import toml
from box import Box

DEFAULT_CONFIG = os.path.join(os.path.dirname(__file__), "config.toml")
INTERPOLATION_REGEX = re.compile(r"\${(.[^${}]*)}")

KeyPath = Tuple[str, ...]


class Config(Box):
    """
    Ripple settings with attribute access, e.g. `config.build.command`.
    """

    def copy(self) -> "Config":
        """
        Copy every section, so the copy can be edited without touching the
        loaded configuration. Leaf values are shared.
        """
        new_config = Config()
        for key, value in self.items():
            if isinstance(value, Config):
                value = value.copy()
            new_config[key] = value
        return new_config


def merge_dicts(d1: MutableMapping, d2: MutableMapping) -> MutableMapping:
    """
    Returns `d1` updated from `d2`, recursing into sections present in both.

    Neither argument is modified.
    """
    merged = d1.copy()
    for key, value in d2.items():
        if isinstance(merged.get(key), MutableMapping) and isinstance(value, MutableMapping):
            merged[key] = merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def string_to_type(val: str) -> Any:
    """
    Types a string taken from the environment or a config file.

    "true"/"false" (any case) become booleans; anything `ast.literal_eval`
    accepts (numbers, lists, dicts) is evaluated; everything else stays a
    string.
    """
    if val.upper() == "TRUE":
        return True
    if val.upper() == "FALSE":
        return False

    try:
        return literal_eval(val)
    except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError):
        return val


def interpolate_env_vars(value: Any) -> Any:
    """
    Expands `$VARS` and `~` until the value stops changing. Non-strings are
    returned as is.
    """
    if not value or not isinstance(value, str):
        return value

    for _ in range(10):
        expanded = os.path.expanduser(os.path.expandvars(value))
        if expanded == value:
            return expanded
        value = expanded
    return None


def _leaves(config: MutableMapping, prefix: KeyPath = ()) -> Iterator[Tuple[KeyPath, Any]]:
    for key, value in config.items():
        path = prefix + (key,)
        if isinstance(value, MutableMapping):
            yield from _leaves(value, path)
        else:
            yield path, value


def _assign(config: MutableMapping, path: KeyPath, value: Any) -> None:
    for key in path[:-1]:
        section = config.get(key)
        if not isinstance(section, MutableMapping):
            section = config[key] = {}
        config = section
    config[path[-1]] = value


def _lookup(config: MutableMapping, dotted: str) -> Any:
    value: Any = config
    for key in dotted.split("."):
        if not isinstance(value, MutableMapping) or key not in value:
            return ""
        value = value[key]
    return value


# Process Config -------------------------------------------------------------


def process_build_defaults(config: Config) -> Config:
    """
    Normalizes build and manifest settings.

    TOML has no NULL, so a zero or false timeout means "no timeout".
    """
    build = config.setdefault("build", {})

    if not build.setdefault("timeout", False):
        build.timeout = None

    if not build.setdefault("max_retry_rounds", 0):
        build.max_retry_rounds = 0

    build.setdefault("env", {})

    manifest = config.setdefault("manifest", {})
    manifest.strict = bool(manifest.get("strict", False))

    return config


# Validation ------------------------------------------------------------------


def validate_config(config: Config) -> None:
    """
    Rejects keys that shadow `Config` methods and an empty build command.
    """
    reserved = set(dir(Config))
    for path, _ in _leaves(config):
        for key in path:
            if key in reserved:
                raise ValueError('Invalid config key: "{}"'.format(key))

    command = config.get("build", {}).get("command")
    if command is not None and not str(command).strip():
        raise ValueError("Invalid config: build.command must not be empty")


# Load configuration ----------------------------------------------------------


def load_toml(path: str) -> dict:
    return toml.load(cast(str, interpolate_env_vars(path)))


def interpolate_config(config: dict, env_var_prefix: Optional[str] = None) -> Config:
    """
    Resolves a raw config dictionary, such as the one `load_toml` returns.

    In order:
        - `[PREFIX]__[SECTION]__[KEY]=value` env vars override config values
        - `$VARS` and `~` are expanded and strings are typed
        - `${section.key}` references are replaced, at most 10 levels deep
    """
    resolved = copy.deepcopy(config)

    if env_var_prefix:
        marker = env_var_prefix + "__"
        for env_var, env_value in os.environ.items():
            if not env_var.startswith(marker):
                continue
            # needs at least one section and a key
            path = tuple(env_var[len(marker):].lower().split("__"))
            if len(path) < 2:
                continue
            _assign(resolved, path, string_to_type(str(interpolate_env_vars(env_value))))

    for path, value in list(_leaves(resolved)):
        value = interpolate_env_vars(value)
        if isinstance(value, str):
            value = string_to_type(value)
        _assign(resolved, path, value)

    for _ in range(10):
        changed = False
        for path, value in list(_leaves(resolved)):
            if not isinstance(value, str):
                continue
            match = INTERPOLATION_REGEX.search(value)
            if not match:
                continue
            ref_value = _lookup(resolved, match.group(1))
            if value == match.group(0):
                value = ref_value
            else:
                value = value.replace(match.group(0), str(ref_value), 1)
            _assign(resolved, path, value)
            changed = True
        if not changed:
            break

    return Config(resolved)


def load_configuration(
    path: str,
    user_config_path: Optional[str] = None,
    env_var_prefix: Optional[str] = None,
) -> Config:
    """
    Loads the packaged defaults, merges the user file over them and resolves
    the result.

    Args:
        - path (str): the path to the TOML defaults
        - user_config_path (str): an optional user config file, merged before
            interpolation so its values can reference the defaults
        - env_var_prefix (str): env vars with this prefix override config values

    Returns:
        - Config
    """
    raw: Union[dict, MutableMapping] = load_toml(path)

    if user_config_path and os.path.isfile(str(interpolate_env_vars(user_config_path))):
        raw = merge_dicts(raw, load_toml(user_config_path))

    config = interpolate_config(dict(raw), env_var_prefix=env_var_prefix)

    validate_config(config)
    return process_build_defaults(config)
