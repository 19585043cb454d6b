"""Checks on the environment the monitor needs."""

from __future__ import annotations

import os
from typing import Mapping

REQUIRED_ENV_VARS: dict[str, bool] = {
    "HOOK_PATH": True,
    "OTHER_ENV_VAR": False,
}


class MissingEnvironmentError(RuntimeError):
    """A required environment variable is not set."""

    def __init__(self, name: str):
        super().__init__(f"required environment variable {name} not set")
        self.name = name


def validate_env_vars(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Ensure every required variable is set and return their values."""
    env = os.environ if environ is None else environ
    found = {}
    for name, required in REQUIRED_ENV_VARS.items():
        if name in env:
            if required:
                found[name] = env[name]
        elif required:
            raise MissingEnvironmentError(name)
    return found