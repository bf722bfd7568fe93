"""Center assignment profile loader."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import re
from typing import Any, Mapping

import yaml

from .contracts import AssignmentContractError, ensure_student_status


_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class CenterAssignmentConfigError(ValueError):
    """Raised when a center assignment profile is invalid."""


@dataclass(frozen=True)
class CenterAssignmentProfile:
    profile_id: str
    locator: str
    commit_timeout_seconds: float = 30.0
    eligible_student_statuses: tuple[str, ...] = ("approved",)
    record_runs: bool = True
    log_level: int = logging.INFO
    log_paths: tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict[str, Any]:
        return {
            "profile_id": self.profile_id,
            "locator": self.locator,
            "commit_timeout_seconds": self.commit_timeout_seconds,
            "eligible_student_statuses": list(self.eligible_student_statuses),
            "record_runs": self.record_runs,
            "log_level": logging.getLevelName(self.log_level),
            "log_paths": list(self.log_paths),
        }


def load_profile(path: Path | str) -> CenterAssignmentProfile:
    profile_path = Path(path)
    try:
        payload = yaml.safe_load(profile_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CenterAssignmentConfigError(f"profile not readable: {profile_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise CenterAssignmentConfigError(f"profile is not valid YAML: {profile_path}: {exc}") from exc
    return parse_profile(payload)


def parse_profile(payload: Any) -> CenterAssignmentProfile:
    if not isinstance(payload, Mapping):
        raise CenterAssignmentConfigError("profile must be a mapping")

    profile_id = str(_env(payload.get("profile_id")) or "local").strip()
    section = _section(payload, "center_assignment")
    wiring = _section(section, "wiring")
    policy = _section(section, "policy")
    logging_cfg = _section(section, "logging")

    locator = str(_env(wiring.get("locator")) or "").strip()
    if not locator:
        raise CenterAssignmentConfigError("center_assignment.wiring.locator is required")

    raw_timeout = _env(wiring.get("commit_timeout_seconds"))
    try:
        timeout = 30.0 if raw_timeout in (None, "") else float(raw_timeout)
    except (TypeError, ValueError) as exc:
        raise CenterAssignmentConfigError("commit_timeout_seconds must be a number") from exc
    if timeout <= 0:
        raise CenterAssignmentConfigError("commit_timeout_seconds must be > 0")

    raw_statuses = policy.get("eligible_student_statuses", ["approved"])
    if isinstance(raw_statuses, str):
        raw_statuses = [item for item in raw_statuses.split(",") if item.strip()]
    if not isinstance(raw_statuses, list) or not raw_statuses:
        raise CenterAssignmentConfigError("eligible_student_statuses must be a non-empty list")
    try:
        statuses = tuple(sorted({ensure_student_status(_env(item)) for item in raw_statuses}))
    except AssignmentContractError as exc:
        raise CenterAssignmentConfigError(str(exc)) from exc

    level_name = str(_env(logging_cfg.get("level")) or "INFO").strip().upper()
    if level_name not in _LEVELS:
        raise CenterAssignmentConfigError(f"logging.level must be one of {sorted(_LEVELS)}; got {level_name!r}")
    log_path = str(_env(logging_cfg.get("log_path")) or "").strip()

    return CenterAssignmentProfile(
        profile_id=profile_id,
        locator=locator,
        commit_timeout_seconds=timeout,
        eligible_student_statuses=statuses,
        record_runs=_as_bool(_env(policy.get("record_runs", True))),
        log_level=_LEVELS[level_name],
        log_paths=(log_path,) if log_path else (),
    )


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise CenterAssignmentConfigError(f"{key} must be a mapping")
    return value


def _env(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    return os.getenv(match.group(1), match.group(2) or "")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "t"}
    return bool(value)
