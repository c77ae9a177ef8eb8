"""configuration flowing into a coverage session"""

import dataclasses
import fnmatch
import json
import os
from pathlib import Path
from typing import List, Union

DEFAULT_DUMP_DIR = ".probecov"
ENV_PREFIX = "PROBECOV_"


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclasses.dataclass
class CoverageConfig:
    """
    include / exclude are module name patterns (fnmatch), exclude_definitions
    matches qualified definition names such as `pkg.mod.Class.method`
    """

    include: List[str] = dataclasses.field(default_factory=list)
    exclude: List[str] = dataclasses.field(default_factory=list)
    exclude_definitions: List[str] = dataclasses.field(default_factory=list)
    dump_dir: str = DEFAULT_DUMP_DIR
    parallel: int = 1
    native: bool = False
    native_paths: List[str] = dataclasses.field(default_factory=list)

    def __post_init__(self):
        if self.parallel < 1:
            raise ValueError(f"parallel must be at least 1, got {self.parallel}")

    def matches_module(self, name: str) -> bool:
        """true if the module called `name` should be instrumented"""
        if name == "probecov" or name.startswith("probecov."):
            return False
        if any(fnmatch.fnmatchcase(name, pattern) for pattern in self.exclude):
            return False
        return any(
            fnmatch.fnmatchcase(name, pattern) or name.startswith(pattern + ".")
            for pattern in self.include
        )

    def matches_definition(self, qualified_name: str) -> bool:
        return not any(
            fnmatch.fnmatchcase(qualified_name, pattern)
            for pattern in self.exclude_definitions
        )

    def to_file(self, path: Union[str, Path]) -> None:
        with open(path, "w") as f:
            json.dump(dataclasses.asdict(self), f, indent=2)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "CoverageConfig":
        with open(path) as f:
            data = json.load(f)
        known = {field.name for field in dataclasses.fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def from_env(cls, environ=None) -> "CoverageConfig":
        """build a config from PROBECOV_* variables"""
        env = os.environ if environ is None else environ
        config = cls()
        if env.get(ENV_PREFIX + "INCLUDE"):
            config.include = _split(env[ENV_PREFIX + "INCLUDE"])
        if env.get(ENV_PREFIX + "EXCLUDE"):
            config.exclude = _split(env[ENV_PREFIX + "EXCLUDE"])
        if env.get(ENV_PREFIX + "DUMP_DIR"):
            config.dump_dir = env[ENV_PREFIX + "DUMP_DIR"]
        if env.get(ENV_PREFIX + "PARALLEL"):
            config.parallel = int(env[ENV_PREFIX + "PARALLEL"])
        if env.get(ENV_PREFIX + "NATIVE"):
            config.native = env[ENV_PREFIX + "NATIVE"].lower() in ("1", "true", "yes")
        if env.get(ENV_PREFIX + "NATIVE_PATHS"):
            config.native_paths = _split(env[ENV_PREFIX + "NATIVE_PATHS"])
        config.__post_init__()
        return config
