# Copyright (c) Syntropy Systems
"""Sweep definitions: explicit cases and grid matrices loaded from YAML."""
from __future__ import annotations

import contextlib
import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypedDict, cast

import yaml
from pydantic import ValidationError

from mountsweep.errors import ConfigError
from mountsweep.models.case import ConfigurationCase

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from mountsweep.appliers import SweepEnvironment
    from mountsweep.models.base import JSONValue


class SweepParamSpec(TypedDict, total=False):
    """Values a matrix parameter takes."""

    values: list[JSONValue]


class MatrixSpec(TypedDict, total=False):
    """A grid of cases generated from parameter combinations."""

    name: str
    kind: str
    variant: str
    family: str
    tier: str
    parameters: dict[str, SweepParamSpec]
    template: dict[str, JSONValue]


@contextlib.contextmanager
def no_fixture(env: SweepEnvironment) -> Iterator[None]:  # noqa: ARG001
    """Fixture for plans that need no server-side setup."""
    yield


@dataclass
class SweepPlan:
    """Cases to run in order, plus the fixture they run inside."""

    name: str
    cases: list[ConfigurationCase]
    fixture: Callable[[SweepEnvironment], contextlib.AbstractContextManager[object]] = (
        no_fixture
    )
    expected_paths: tuple[str, ...] | None = None


@dataclass
class SweepConfig:
    """A sweep definition file."""

    name: str
    cases: list[dict[str, object]] = field(default_factory=list)
    matrix: list[MatrixSpec] = field(default_factory=list)
    defaults: dict[str, JSONValue] = field(default_factory=dict)
    expected_paths: list[str] | None = None

    @classmethod
    def from_yaml(cls, path: Path) -> SweepConfig:
        """Load a sweep definition from a YAML file."""
        try:
            with path.open() as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            msg = f"Cannot parse {path}: {e}"
            raise ConfigError(msg) from e

        if not isinstance(data, dict):
            msg = f"{path} must contain a mapping"
            raise ConfigError(msg)
        data = cast("dict[str, object]", data)

        if "cases" not in data and "matrix" not in data:
            msg = "Sweep config must have a 'cases' or 'matrix' field"
            raise ConfigError(msg)

        cases = data.get("cases") or []
        matrix = data.get("matrix") or []
        if isinstance(matrix, dict):
            matrix = [matrix]
        if not isinstance(cases, list) or not isinstance(matrix, list):
            msg = "'cases' and 'matrix' must be lists"
            raise ConfigError(msg)

        expected = data.get("expected_paths")
        if expected is not None and not isinstance(expected, list):
            msg = "'expected_paths' must be a list"
            raise ConfigError(msg)

        defaults = data.get("defaults") or {}
        if not isinstance(defaults, dict):
            msg = "'defaults' must be a mapping"
            raise ConfigError(msg)

        return cls(
            name=str(data.get("name") or path.stem),
            cases=cast("list[dict[str, object]]", cases),
            matrix=cast("list[MatrixSpec]", matrix),
            defaults=cast("dict[str, JSONValue]", defaults),
            expected_paths=[str(p) for p in expected] if expected is not None else None,
        )


def generate_grid_combinations(
    parameters: dict[str, SweepParamSpec],
) -> Iterator[dict[str, JSONValue]]:
    """Generate all combinations for a grid sweep.

    Each parameter should have a 'values' key with a list of values.
    """
    param_names: list[str] = []
    param_values: list[list[JSONValue]] = []

    for name, spec in parameters.items():
        if not isinstance(spec, dict) or "values" not in spec:
            msg = f"Parameter '{name}' must have 'values' for grid sweep"
            raise ConfigError(msg)
        param_names.append(name)
        param_values.append(spec["values"])

    for combo in itertools.product(*param_values):
        yield dict(zip(param_names, combo))


def _render(value: JSONValue, combo: dict[str, JSONValue]) -> JSONValue:
    if isinstance(value, str):
        try:
            return value.format(**combo)
        except (KeyError, IndexError) as e:
            msg = f"Template '{value}' references unknown parameter {e}"
            raise ConfigError(msg) from e
    if isinstance(value, list):
        return [_render(v, combo) for v in value]
    if isinstance(value, dict):
        return {k: _render(v, combo) for k, v in value.items()}
    return value


def _build_case(entry: dict[str, object], where: str) -> ConfigurationCase:
    try:
        return ConfigurationCase.model_validate(entry)
    except ValidationError as e:
        msg = f"Invalid case {where}: {e}"
        raise ConfigError(msg) from e


def expand_matrix(spec: MatrixSpec, index: int = 0) -> list[ConfigurationCase]:
    """Expand one matrix block into cases.

    ``name`` and every string in ``template`` are format strings over the
    combination, e.g. ``name: "v{vers}-{cache}"``.
    """
    if "name" not in spec or "kind" not in spec:
        msg = f"matrix[{index}] must have 'name' and 'kind'"
        raise ConfigError(msg)

    cases: list[ConfigurationCase] = []
    for combo in generate_grid_combinations(spec.get("parameters", {})):
        parameters: dict[str, JSONValue] = dict(combo)
        for key, value in spec.get("template", {}).items():
            parameters[key] = _render(value, combo)
        name = _render(spec["name"], combo)
        entry: dict[str, object] = {
            "name": name,
            "kind": spec["kind"],
            "parameters": parameters,
        }
        for key in ("variant", "family", "tier"):
            if key in spec:
                entry[key] = spec[key]
        cases.append(_build_case(entry, f"matrix[{index}] {name!r}"))
    return cases


def generate_cases(sweep: SweepConfig) -> list[ConfigurationCase]:
    """Build the ordered case list: explicit cases first, then matrices.

    Sweep-level ``defaults`` fill parameters a case does not set.
    """
    cases: list[ConfigurationCase] = []
    for i, raw in enumerate(sweep.cases):
        if not isinstance(raw, dict):
            msg = f"cases[{i}] must be a mapping"
            raise ConfigError(msg)
        entry = dict(raw)
        params = entry.get("parameters") or {}
        if not isinstance(params, dict):
            msg = f"cases[{i}].parameters must be a mapping"
            raise ConfigError(msg)
        entry["parameters"] = {**sweep.defaults, **params}
        cases.append(_build_case(entry, f"cases[{i}]"))

    for i, spec in enumerate(sweep.matrix):
        for case in expand_matrix(spec, i):
            merged = {**sweep.defaults, **case.parameters}
            cases.append(case.model_copy(update={"parameters": merged}))

    names = [c.name for c in cases]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        msg = f"Duplicate case names: {', '.join(duplicates)}"
        raise ConfigError(msg)
    return cases


def load_plan(path: Path) -> SweepPlan:
    """Load a sweep definition file as a plan."""
    sweep = SweepConfig.from_yaml(path)
    cases = generate_cases(sweep)
    if not cases:
        msg = f"{path} defines no cases"
        raise ConfigError(msg)
    expected = tuple(sweep.expected_paths) if sweep.expected_paths else None
    return SweepPlan(name=sweep.name, cases=cases, expected_paths=expected)
