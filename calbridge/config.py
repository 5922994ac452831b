import json
import logging
import os
from typing import Any
from typing import Dict
from typing import Mapping
from typing import Optional

"""
Settings for calbridge.  Sources, in increasing order of priority:

* the built-in DEFAULTS
* a config file (JSON, or YAML if pyyaml is installed), one section of it
* CALBRIDGE_* environment variables
"""

log = logging.getLogger("calbridge")

DEFAULTS: Dict[str, Any] = {
    "default_timezone": "Europe/London",
    "max_iterations": 365,
    "prodid": "-//calbridge//calbridge//EN",
}

ENVIRONMENT = {
    "CALBRIDGE_DEFAULT_TIMEZONE": "default_timezone",
    "CALBRIDGE_MAX_ITERATIONS": "max_iterations",
    "CALBRIDGE_PRODID": "prodid",
}


def config_section(config, section="default"):
    """A section of the config file, with the sections it inherits from merged in"""
    if section not in config:
        return {}
    parent = config[section].get("inherits")
    merged = config_section(config, parent) if parent else {}
    merged.update(config[section])
    return merged


def _config_locations():
    home = os.environ.get("HOME", "/")
    for suffix in ("conf", "yaml", "json"):
        yield os.path.join(home, ".config", "calbridge", f"calbridge.{suffix}")
    yield "/etc/calbridge/calbridge.conf"


def _load(fn):
    with open(fn, "rb") as f:
        raw = f.read()
    try:
        return json.loads(raw)
    except json.decoder.JSONDecodeError:
        pass
    ## pyyaml is optional, so it is only imported when the file isn't json
    try:
        import yaml
    except ImportError:
        raise ValueError(f"{fn} is not json, and pyyaml is not available")
    try:
        return yaml.load(raw, yaml.SafeLoader)
    except yaml.YAMLError as e:
        raise ValueError(f"{fn} is neither json nor yaml: {e}")


def read_config(fn):
    """
    Reads the config file ``fn``.  Without ``fn``, the first readable file
    of the default locations is used.  Returns an empty dict when nothing
    usable was found.
    """
    if not fn:
        for location in _config_locations():
            found = read_config(location)
            if found:
                return found
        return {}

    try:
        return _load(fn) or {}
    except FileNotFoundError:
        log.info(f"{fn} not found")
    except ValueError:
        log.error(f"broken config file {fn}, ignoring it", exc_info=True)
    return {}


def _from_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    ret = {}
    for variable, key in ENVIRONMENT.items():
        if environ.get(variable):
            ret[key] = environ[variable]
    return ret


def get_settings(
    fn: Optional[str] = None,
    section: str = "default",
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    The effective settings as a plain dict with the keys of DEFAULTS.

    ``fn`` is the config file to read (the default locations are searched
    if not given), ``section`` the section of it to use.  ``environ``
    defaults to os.environ.
    """
    if environ is None:
        environ = os.environ
    settings = dict(DEFAULTS)
    config = read_config(fn) or {}
    settings.update(
        {k: v for k, v in config_section(config, section).items() if k in DEFAULTS}
    )
    settings.update(_from_environment(environ))

    try:
        settings["max_iterations"] = int(settings["max_iterations"])
        if settings["max_iterations"] < 1:
            raise ValueError("must be positive")
    except (TypeError, ValueError) as e:
        log.error(
            f"invalid max_iterations {settings['max_iterations']!r} ({e}), using {DEFAULTS['max_iterations']}"
        )
        settings["max_iterations"] = DEFAULTS["max_iterations"]
    return settings
