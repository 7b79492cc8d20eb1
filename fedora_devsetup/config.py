from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .lib.env import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_TIMEOUT_S
from .models import Action, Check, ExistenceCheck, Step

NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
CHECK_KINDS = ("command", "path", "probe", "packages")
SHELL = "bash"


class ManifestError(ValueError):
    pass


def bundled_manifest(name: str) -> str:
    """Path of a manifest shipped with the package (provision.yaml, checks.yaml)."""
    return str(Path(__file__).resolve().parent / "manifests" / name)


def _expand(arg: str) -> str:
    return os.path.expanduser(arg) if arg.startswith("~") else arg


def parse_command(raw_cmd: Any, *, where: str) -> Tuple[str, ...]:
    """Turn a manifest command into an argv.

    Accepted forms:
    - [git, --version]            argv as-is
    - "git --version"             split with shlex
    - {run: <either of above>}
    - {shell: "a | b"}            run through bash -c
    """

    if isinstance(raw_cmd, dict):
        if "shell" in raw_cmd:
            script = raw_cmd["shell"]
            if not isinstance(script, str) or not script.strip():
                raise ManifestError(f"{where}: shell must be a non-empty string")
            return (SHELL, "-c", script)
        if "run" in raw_cmd:
            raw_cmd = raw_cmd["run"]
        else:
            raise ManifestError(f"{where}: command needs 'run' or 'shell'")

    if isinstance(raw_cmd, str):
        argv = shlex.split(raw_cmd)
    elif isinstance(raw_cmd, list) and all(isinstance(a, (str, int, float)) for a in raw_cmd):
        # YAML reads a bare `true`/`false` as a bool; we mean the commands.
        argv = [str(a).lower() if isinstance(a, bool) else str(a) for a in raw_cmd]
    else:
        raise ManifestError(f"{where}: command must be a string or list of strings")

    if not argv:
        raise ManifestError(f"{where}: empty command")
    return tuple(_expand(a) for a in argv)


def _as_names(value: Any, *, where: str) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not value or not all(isinstance(v, str) and v for v in value):
        raise ManifestError(f"{where}: expected a name or a non-empty list of names")
    return tuple(value)


def _parse_existence_check(raw: Any, *, where: str) -> Optional[ExistenceCheck]:
    if raw is None:
        return None
    if not isinstance(raw, dict) or len(raw) != 1:
        raise ManifestError(f"{where}: check must be a mapping with exactly one of {', '.join(CHECK_KINDS)}")

    kind, value = next(iter(raw.items()))
    if kind not in CHECK_KINDS:
        raise ManifestError(f"{where}: unknown check kind {kind!r}")

    if kind == "probe":
        return ExistenceCheck(kind=kind, targets=parse_command(value, where=f"{where}.probe"))

    targets = _as_names(value, where=f"{where}.{kind}")
    if kind == "path":
        targets = tuple(os.path.expanduser(t) for t in targets)
    return ExistenceCheck(kind=kind, targets=targets)


def _parse_name(item: Dict[str, Any], seen: set, *, where: str) -> str:
    name = item.get("name")
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise ManifestError(f"{where}: name must match {NAME_RE.pattern}, got {name!r}")
    if name in seen:
        raise ManifestError(f"{where}: duplicate name {name!r}")
    seen.add(name)
    return name


def _opt_float(value: Any, *, where: str) -> Optional[float]:
    if value is None:
        return None
    try:
        f = float(value)
    except (TypeError, ValueError) as e:
        raise ManifestError(f"{where}: expected a number, got {value!r}") from e
    if f <= 0:
        raise ManifestError(f"{where}: must be positive")
    return f


def parse_steps(raw_steps: Any) -> List[Step]:
    if not isinstance(raw_steps, list):
        raise ManifestError("steps must be a list")

    seen: set = set()
    steps: List[Step] = []
    for idx, item in enumerate(raw_steps):
        where = f"steps[{idx}]"
        if not isinstance(item, dict):
            raise ManifestError(f"{where}: must be a mapping")
        name = _parse_name(item, seen, where=where)
        where = f"steps.{name}"

        install = item.get("install") or []
        if not isinstance(install, list):
            raise ManifestError(f"{where}.install must be a list")
        actions = []
        for a_idx, a in enumerate(install):
            allow_failure = bool(a.get("allow_failure", False)) if isinstance(a, dict) else False
            actions.append(
                Action(
                    argv=parse_command(a, where=f"{where}.install[{a_idx}]"),
                    allow_failure=allow_failure,
                )
            )

        requires: Tuple[str, ...] = ()
        if item.get("requires"):
            requires = _as_names(item["requires"], where=f"{where}.requires")

        path_prepend: Tuple[str, ...] = ()
        if item.get("path_prepend"):
            path_prepend = tuple(
                os.path.expanduser(p) for p in _as_names(item["path_prepend"], where=f"{where}.path_prepend")
            )

        version = item.get("version")
        steps.append(
            Step(
                name=name,
                description=str(item.get("description") or name),
                phase=item.get("phase"),
                check=_parse_existence_check(item.get("check"), where=f"{where}.check"),
                actions=tuple(actions),
                blocking=bool(item.get("blocking", False)),
                requires=requires,
                version_probe=parse_command(version, where=f"{where}.version") if version else None,
                path_prepend=path_prepend,
                timeout_s=_opt_float(item.get("timeout_s"), where=f"{where}.timeout_s"),
            )
        )
    return steps


def parse_checks(raw_checks: Any) -> List[Check]:
    if not isinstance(raw_checks, list):
        raise ManifestError("checks must be a list")

    seen: set = set()
    checks: List[Check] = []
    for idx, item in enumerate(raw_checks):
        where = f"checks[{idx}]"
        if not isinstance(item, dict):
            raise ManifestError(f"{where}: must be a mapping")
        name = _parse_name(item, seen, where=where)
        where = f"checks.{name}"

        description = item.get("description")
        if not isinstance(description, str) or not description.strip():
            raise ManifestError(f"{where}: description is required")

        if "shell" in item:
            raw_cmd: Any = {"shell": item["shell"]}
        elif "run" in item:
            raw_cmd = item["run"]
        else:
            raise ManifestError(f"{where}: needs 'run' or 'shell'")

        checks.append(
            Check(
                name=name,
                description=description,
                argv=parse_command(raw_cmd, where=where),
                timeout_s=_opt_float(item.get("timeout_s"), where=f"{where}.timeout_s"),
            )
        )
    return checks


@dataclass(frozen=True)
class Manifest:
    raw: Dict[str, Any]
    source: str = "<memory>"

    @property
    def _defaults(self) -> Dict[str, Any]:
        return self.raw.get("defaults") or {}

    @property
    def timeout_s(self) -> float:
        return float(self._defaults.get("timeout_s") or DEFAULT_TIMEOUT_S)

    @property
    def max_output_bytes(self) -> int:
        return int(self._defaults.get("max_output_bytes") or DEFAULT_MAX_OUTPUT_BYTES)

    @property
    def requires(self) -> List[str]:
        """Executables the harness itself needs before any work starts."""
        raw = self.raw.get("requires")
        return list(_as_names(raw, where="requires")) if raw else []

    @property
    def steps(self) -> List[Step]:
        return parse_steps(self.raw.get("steps") or [])

    @property
    def checks(self) -> List[Check]:
        return parse_checks(self.raw.get("checks") or [])


def load_manifest(path: str) -> Manifest:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ManifestError(f"manifest must be YAML: {path}")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ManifestError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ManifestError(f"{path} must contain a mapping/object")

    return Manifest(raw=raw, source=str(p))
