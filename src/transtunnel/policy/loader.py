"""Load option defaults from a YAML file whose keys mirror the CLI long options."""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path

import yaml

from transtunnel.errors import ValidationError
from transtunnel.policy.resolver import Options

# YAML key -> Options attribute, for keys whose names differ
_ALIASES = {
    "server": "servers",
    "interface": "interfaces",
}

_MULTI = {
    "src_direct",
    "src_proxy",
    "src_normal",
    "dst_direct",
    "dst_proxy",
    "servers",
    "interfaces",
}


def load_options(path: str | Path) -> Options:
    """Load an options file from disk."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"cannot read options file {path}: {e}") from e
    return load_options_from_string(text)


def load_options_from_string(text: str) -> Options:
    """Parse a YAML mapping into Options."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"options file is not valid YAML: {e}") from e
    if data is None:
        return Options()
    if not isinstance(data, dict):
        raise ValidationError("options file must be a mapping")

    # flush_only is a command-line switch, never a file default
    known = {f.name for f in fields(Options)} - {"flush_only"}
    values: dict = {}
    for raw_key, value in data.items():
        key = str(raw_key).replace("-", "_")
        key = _ALIASES.get(key, key)
        if key not in known:
            raise ValidationError(f"unknown key in options file: {raw_key}")
        if key in _MULTI:
            value = _as_tuple(value)
        values[key] = value
    return Options(**values)


def merge_options(base: Options, override: Options) -> Options:
    """Return base with every option that override actually sets replaced."""
    defaults = Options()
    merged = {}
    for f in fields(Options):
        value = getattr(override, f.name)
        if value != getattr(defaults, f.name):
            merged[f.name] = value
        else:
            merged[f.name] = getattr(base, f.name)
    return Options(**merged)


def _as_tuple(value) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    return (str(value),)
