"""Config utilities for PG-HAP.

Nested configs stay dataclasses at every step; YAML and dot-key overrides are
merged strictly (unknown keys raise ``KeyError``).

Public API:
- load_yaml_to_dataclass
- apply_dot_overrides
- flatten_overrides
- dataclass_to_yaml
- save_dataclass_yaml
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import os
import re
import typing as t
from dataclasses import MISSING, asdict, fields, is_dataclass
from typing import Any, Dict, Literal, Type, TypeVar

import yaml

T = TypeVar("T")

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")

_TRUTHY = {"true", "1", "yes", "on"}
_FALSY = {"false", "0", "no", "off"}


# ---------------- Env var interpolation ----------------
def _interpolate_env(s: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:default}`` tokens with environment values.

    Args:
        s (str): Input string.

    Returns:
        str: The interpolated string. Unset variables without a default become "".
    """

    def _sub(match: re.Match) -> str:
        var, default = match.group(1), match.group(2)
        return os.getenv(var, default if default is not None else "")

    return _ENV_PATTERN.sub(_sub, s)


def _walk_env(obj: Any) -> Any:
    """Apply env interpolation to every string inside a nested YAML payload."""
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _walk_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_env(v) for v in obj]
    return obj


# ---------------- YAML helpers ----------------
def dataclass_to_yaml(dc: T) -> str:
    """Serialize a dataclass instance to YAML, keeping field order.

    Args:
        dc (T): A dataclass instance.

    Returns:
        str: The YAML representation.

    Raises:
        TypeError: If `dc` is not a dataclass instance.
    """
    if not is_dataclass(dc) or isinstance(dc, type):
        raise TypeError("dataclass_to_yaml expects a dataclass instance.")
    return yaml.safe_dump(asdict(dc), sort_keys=False)


def save_dataclass_yaml(dc: T, path: str) -> None:
    """Write a dataclass instance to ``path`` as YAML.

    Raises:
        TypeError: If `dc` is not a dataclass instance.
    """
    text = dataclass_to_yaml(dc)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


def load_yaml_to_dataclass(
    path: str,
    dc_type: Type[T],
    *,
    base: T | None = None,
    overlays: Dict[str, Any] | None = None,
    yaml_preset_behavior: Literal["ignore", "error"] = "ignore",
) -> T:
    """Load a YAML file and merge it into a config dataclass.

    Precedence is defaults (or ``base``, usually built from a CLI preset) < YAML < ``overlays``. A ``preset`` key inside the YAML is CLI-only: it is dropped with a warning or rejected, depending on ``yaml_preset_behavior``.

    Args:
        path (str): Path to the YAML file.
        dc_type (Type[T]): Dataclass type to construct when `base` is None.
        base (T | None): Starting instance. It is deep-copied, never mutated.
        overlays (Dict[str, Any] | None): Nested mapping applied after the YAML.
        yaml_preset_behavior (Literal["ignore", "error"]): Handling of a YAML ``preset`` key.

    Returns:
        T: The merged dataclass instance.

    Raises:
        TypeError: If `base` is not a dataclass, or the YAML root or `overlays` is not a mapping.
        ValueError: If `yaml_preset_behavior="error"` and the YAML contains ``preset``.
        KeyError: If the YAML or overlays name an unknown field.
    """
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    raw = _walk_env(raw)

    if not isinstance(raw, dict):
        raise TypeError(f"{path} did not parse as a mapping.")

    if "preset" in raw:
        preset_in_yaml = raw.pop("preset")
        if yaml_preset_behavior == "error":
            raise ValueError(
                f"YAML contains 'preset: {preset_in_yaml}'. "
                "The preset must be selected via the command line only."
            )
        logger.warning(
            "Ignoring 'preset' in YAML (%r). Preset selection is CLI-only.",
            preset_in_yaml,
        )

    if base is not None:
        if not is_dataclass(base):
            raise TypeError("`base` must be a dataclass instance.")
        cfg = copy.deepcopy(base)
    else:
        cfg = dc_type()

    _merge_mapping_into_dataclass(cfg, raw)

    if overlays:
        if not isinstance(overlays, dict):
            raise TypeError("`overlays` must be a nested dict.")
        _merge_mapping_into_dataclass(cfg, overlays)

    return cfg


# ---------------- Schema introspection ----------------
def _is_dataclass_type(tp: t.Any) -> bool:
    return isinstance(tp, type) and dataclasses.is_dataclass(tp)


def _unwrap_optional(tp: t.Any) -> t.Any:
    """Return ``T`` for ``Optional[T]`` / ``T | None``; otherwise ``tp``."""
    args = [a for a in t.get_args(tp) if a is not type(None)]
    if type(None) in t.get_args(tp) and len(args) == 1:
        return args[0]
    return tp


def _field_type(dc_type: type, name: str) -> t.Any:
    """Resolved annotation of field ``name`` on ``dc_type``.

    Raises:
        KeyError: If the dataclass has no such field.
    """
    known = {f.name for f in fields(dc_type)}
    if name not in known:
        raise KeyError(f"Unknown config key: '{name}' on {dc_type.__name__}")
    hints = t.get_type_hints(dc_type)
    return hints.get(name, t.Any)


def _coerce_value(value: t.Any, tp: t.Any, where: str, *, current: t.Any = MISSING):
    """Coerce strings from CLI/YAML into the annotated primitive or Literal type.

    Args:
        value (t.Any): Incoming value.
        tp (t.Any): Target annotation (already unwrapped from Optional).
        where (str): Dot path, used in error messages.
        current (t.Any): Current field value; guides coercion for ``Any``.

    Returns:
        t.Any: The coerced value, or `value` when no coercion applies.

    Raises:
        ValueError: If `value` is outside a Literal's allowed set.
    """
    if tp in (t.Any, object) and current is not MISSING and current is not None:
        tp = type(current)

    if t.get_origin(tp) is t.Literal:
        allowed = t.get_args(tp)
        if value not in allowed:
            raise ValueError(
                f"Invalid value for {where}. Expected one of {list(allowed)}, got {value!r}."
            )
        return value

    if tp is bool:
        if isinstance(value, str):
            v = value.strip().lower()
            if v in _TRUTHY:
                return True
            if v in _FALSY:
                return False
        return bool(value)

    if tp in (int, float, str):
        if value is None:
            return value
        if isinstance(value, str) and tp is not str:
            value = value.strip()
        try:
            return tp(value)
        except (TypeError, ValueError):
            return value

    return value


def _merge_mapping_into_dataclass(
    instance: T, payload: dict, *, path: str = "<root>"
) -> T:
    """Recursively merge a nested mapping into a dataclass instance, strictly.

    Args:
        instance (T): Dataclass instance, updated in place.
        payload (dict): Nested mapping.
        path (str): Dot path for error messages.

    Returns:
        T: `instance`.

    Raises:
        TypeError: If `instance` is not a dataclass.
        KeyError: If `payload` names a field `instance` does not have.
    """
    if not is_dataclass(instance):
        raise TypeError(f"Expected dataclass at {path}, got {type(instance)}")

    dc_type = type(instance)
    for k, v in payload.items():
        exp_core = _unwrap_optional(_field_type(dc_type, k))
        cur = getattr(instance, k)

        if _is_dataclass_type(exp_core) and isinstance(v, dict):
            if cur is None:
                cur = exp_core()
            setattr(
                instance, k, _merge_mapping_into_dataclass(cur, v, path=f"{path}.{k}")
            )
        else:
            setattr(instance, k, _coerce_value(v, exp_core, f"{path}.{k}", current=cur))
    return instance


def flatten_overrides(payload: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten ``{'search': {'min_test_sites': 5}}`` into ``{'search.min_test_sites': 5}``."""
    out: Dict[str, Any] = {}
    for k, v in payload.items():
        key = f"{prefix}.{k}" if prefix else k
        if isinstance(v, dict):
            out.update(flatten_overrides(v, key))
        else:
            out[key] = v
    return out


def apply_dot_overrides(
    dc: t.Any,
    overrides: dict[str, t.Any] | None,
    *,
    root_cls: type | None = None,
) -> t.Any:
    """Apply overrides like ``{'io.prefix': 'run1', 'search.min_test_sites': 30}``.

    Args:
        dc (t.Any): A config dataclass, or a nested dict when `root_cls` is given.
        overrides (dict[str, t.Any] | None): Dot-path → value mapping.
        root_cls (type | None): Dataclass type used to up-cast a dict `dc`.

    Returns:
        t.Any: A deep copy of `dc` with the overrides applied.

    Raises:
        TypeError: If `dc` is neither a dataclass nor an up-castable dict.
        KeyError: If a path segment is unknown or does not lead to a dataclass.
    """
    if not overrides:
        return dc

    if not is_dataclass(dc):
        if isinstance(dc, dict) and root_cls is not None:
            dc = _merge_mapping_into_dataclass(root_cls(), dc)
        else:
            raise TypeError(
                "apply_dot_overrides expects a dataclass instance, or a dict with `root_cls`."
            )

    updated = copy.deepcopy(dc)

    for dotkey, value in overrides.items():
        *parents, leaf = dotkey.split(".")
        node = updated
        for idx, seg in enumerate(parents):
            _field_type(type(node), seg)
            node = getattr(node, seg)
            if not is_dataclass(node):
                where = ".".join(parents[: idx + 1])
                raise KeyError(
                    f"Target '{where}' is not a config section; cannot set '{dotkey}'."
                )

        exp_core = _unwrap_optional(_field_type(type(node), leaf))
        current = getattr(node, leaf)
        setattr(node, leaf, _coerce_value(value, exp_core, dotkey, current=current))

    return updated
