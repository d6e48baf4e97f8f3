from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from errors import ConfigError
from thresholds import parse_thresholds


DEFAULT_TIMEOUT_S = 30.0
DEFAULT_GRACEFUL_STOP_S = 30.0
DEFAULT_TICK_S = 1.0
DEFAULT_READY_TIMEOUT_S = 60.0
INTERPOLATIONS = ("linear", "step")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

# k6 option names accepted in scenario files, mapped to TestConfig fields.
_DURATION_KEYS = {
    "duration": "duration_s",
    "sleep": "sleep_s",
    "timeout": "timeout_s",
    "gracefulStop": "graceful_stop_s",
    "tick": "tick_s",
    "readyTimeout": "ready_timeout_s",
}
_KNOWN_KEYS = set(_DURATION_KEYS) | {
    "url",
    "vus",
    "stages",
    "thresholds",
    "interpolation",
    "healthUrl",
    "expectedStatus",
}


def parse_duration(value: Any, label: str = "duration") -> float:
    """Parse a k6-style duration (``"1m30s"``, ``"10ms"``) or a number of seconds."""
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a duration, got {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ConfigError(f"{label} cannot be empty")
        try:
            seconds = float(text)
        except ValueError:
            position = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != position:
                    break
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                position = match.end()
            if position != len(text):
                raise ConfigError(
                    f"Invalid {label} '{value}'. Expected e.g. 20s, 10ms, 1m30s."
                ) from None
    else:
        raise ConfigError(f"{label} must be a duration, got {value!r}")
    if not math.isfinite(seconds) or seconds < 0:
        raise ConfigError(f"{label} must be a finite duration >= 0, got {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    if seconds < 1.0 and seconds != 0:
        return f"{seconds * 1000:g}ms"
    return f"{seconds:g}s"


@dataclass(frozen=True)
class Stage:
    duration_s: float
    target: int


@dataclass(frozen=True)
class TestConfig:
    __test__ = False

    url: str
    stages: tuple[Stage, ...] = ()
    vus: Optional[int] = None
    duration_s: Optional[float] = None
    sleep_s: float = 1.0
    thresholds: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    timeout_s: float = DEFAULT_TIMEOUT_S
    graceful_stop_s: float = DEFAULT_GRACEFUL_STOP_S
    tick_s: float = DEFAULT_TICK_S
    interpolation: str = "linear"
    health_url: Optional[str] = None
    ready_timeout_s: float = DEFAULT_READY_TIMEOUT_S
    expected_status: int = 200

    @property
    def is_staged(self) -> bool:
        return bool(self.stages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "stages": [
                {"duration": format_duration(stage.duration_s), "target": stage.target}
                for stage in self.stages
            ]
            or None,
            "vus": self.vus,
            "duration": format_duration(self.duration_s) if self.duration_s is not None else None,
            "sleep": format_duration(self.sleep_s),
            "thresholds": {metric: list(exprs) for metric, exprs in self.thresholds.items()},
            "timeout": format_duration(self.timeout_s),
            "gracefulStop": format_duration(self.graceful_stop_s),
            "tick": format_duration(self.tick_s),
            "interpolation": self.interpolation,
            "healthUrl": self.health_url,
            "readyTimeout": format_duration(self.ready_timeout_s),
            "expectedStatus": self.expected_status,
        }


@dataclass
class RunOptions:
    output_dir: Path = Path("runs")
    run_name: Optional[str] = None
    write_artifacts: bool = True


def validate_config(config: TestConfig) -> TestConfig:
    if not config.url or not config.url.startswith(("http://", "https://")):
        raise ConfigError(f"url must be an http(s) URL, got {config.url!r}")

    has_flat = config.vus is not None or config.duration_s is not None
    if config.stages and has_flat:
        raise ConfigError("stages and vus/duration are mutually exclusive")
    if not config.stages and not has_flat:
        raise ConfigError("either stages or vus and duration must be set")
    if has_flat:
        if config.vus is None or config.duration_s is None:
            raise ConfigError("vus and duration must be set together")
        if config.vus < 0:
            raise ConfigError(f"vus must be >= 0, got {config.vus}")
        if config.duration_s <= 0:
            raise ConfigError("duration must be > 0")
    for index, stage in enumerate(config.stages, start=1):
        if stage.target < 0:
            raise ConfigError(f"stage {index} target must be >= 0, got {stage.target}")
    if config.stages and sum(stage.duration_s for stage in config.stages) <= 0:
        raise ConfigError("total stage duration must be > 0")

    if config.timeout_s <= 0:
        raise ConfigError("timeout must be > 0")
    if config.tick_s <= 0:
        raise ConfigError("tick must be > 0")
    if config.interpolation not in INTERPOLATIONS:
        raise ConfigError(
            f"interpolation must be one of {', '.join(INTERPOLATIONS)}, got {config.interpolation!r}"
        )
    if config.health_url is not None and not config.health_url.startswith(("http://", "https://")):
        raise ConfigError(f"healthUrl must be an http(s) URL, got {config.health_url!r}")

    parse_thresholds(config.thresholds)
    return config


def _parse_int(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ConfigError(f"{label} must be an integer, got {value!r}")
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigError(f"{label} must be an integer, got {value!r}") from exc


def parse_stage(value: Any, index: int = 1) -> Stage:
    if isinstance(value, str):
        duration_text, sep, target_text = value.partition(":")
        if not sep:
            raise ConfigError(f"Invalid stage '{value}'. Expected <duration>:<target>, e.g. 30s:100.")
        value = {"duration": duration_text, "target": target_text}
    if not isinstance(value, dict):
        raise ConfigError(f"stage {index} must be an object with duration and target")
    if "duration" not in value or "target" not in value:
        raise ConfigError(f"stage {index} needs both duration and target")
    return Stage(
        duration_s=parse_duration(value["duration"], f"stage {index} duration"),
        target=_parse_int(value["target"], f"stage {index} target"),
    )


def normalize_thresholds(raw: Any) -> dict[str, tuple[str, ...]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("thresholds must map metric names to expressions")
    normalized: dict[str, tuple[str, ...]] = {}
    for metric, expressions in raw.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        if not isinstance(expressions, list) or not all(isinstance(e, str) for e in expressions):
            raise ConfigError(f"thresholds for {metric} must be a string or a list of strings")
        normalized[str(metric)] = tuple(expressions)
    return normalized


def config_from_dict(payload: Mapping[str, Any]) -> TestConfig:
    unknown = sorted(set(payload) - _KNOWN_KEYS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
    if "url" not in payload:
        raise ConfigError("url is required")

    kwargs: dict[str, Any] = {"url": str(payload["url"])}
    for key, attr in _DURATION_KEYS.items():
        if payload.get(key) is not None:
            kwargs[attr] = parse_duration(payload[key], key)

    stages = payload.get("stages")
    if stages is not None:
        if not isinstance(stages, list):
            raise ConfigError("stages must be a list")
        kwargs["stages"] = tuple(parse_stage(item, i) for i, item in enumerate(stages, start=1))
    if payload.get("vus") is not None:
        kwargs["vus"] = _parse_int(payload["vus"], "vus")
    kwargs["thresholds"] = normalize_thresholds(payload.get("thresholds"))
    if payload.get("interpolation") is not None:
        kwargs["interpolation"] = str(payload["interpolation"])
    if payload.get("healthUrl") is not None:
        kwargs["health_url"] = str(payload["healthUrl"])
    if payload.get("expectedStatus") is not None:
        kwargs["expected_status"] = _parse_int(payload["expectedStatus"], "expectedStatus")

    return validate_config(TestConfig(**kwargs))


def read_config_payload(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return payload


def merge_payload(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay non-None ``overrides`` on a scenario payload.

    Giving stages drops a flat vus/duration from ``base`` and the reverse,
    so a command-line override can switch the run mode.
    """
    merged = dict(base)
    updates = {key: value for key, value in overrides.items() if value is not None}
    if "stages" in updates:
        merged.pop("vus", None)
        merged.pop("duration", None)
    elif "vus" in updates or "duration" in updates:
        merged.pop("stages", None)
    merged.update(updates)
    return merged
