"""Configuration directory and settings file helpers."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

CONFIG_DIR_NAME = "stronghold_sync"
SETTINGS_FILE_NAME = "settings.toml"
SUBDIRECTORIES: tuple[str, ...] = ("store", "logs", "diagnostics")
CACHE_STRATEGIES: tuple[str, ...] = ("lru", "fifo", "lfu")


def is_windows() -> bool:
    """Return True if running on Windows."""
    return os.name == "nt" or sys.platform.startswith("win")


def get_base_config_dir() -> Path:
    """Resolve the platform-specific configuration directory."""
    if is_windows():
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
        return base / CONFIG_DIR_NAME
    return Path.home() / ".config" / CONFIG_DIR_NAME


def ensure_config_structure(base_dir: Path | None = None, *, subdirs: Iterable[str] = SUBDIRECTORIES) -> Path:
    """Ensure that the config directory and expected subdirectories exist."""
    base = base_dir or get_base_config_dir()
    base.mkdir(parents=True, exist_ok=True)
    for name in subdirs:
        (base / name).mkdir(parents=True, exist_ok=True)
    return base


class ConfigError(RuntimeError):
    """Raised when a settings file is invalid."""


@dataclass
class SyncBlock:
    owner_id: Optional[str] = None
    interval_seconds: float = 30.0
    remote_dir: Optional[str] = None


@dataclass
class CacheBlock:
    ttl_ms: int = 300_000
    max_size: int = 1000
    strategy: str = "lru"
    slow_query_ms: int = 1000


@dataclass
class DeviceBlock:
    display_name: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Settings:
    """Complete settings document representation."""

    sync: SyncBlock = field(default_factory=SyncBlock)
    cache: CacheBlock = field(default_factory=CacheBlock)
    device: DeviceBlock = field(default_factory=DeviceBlock)

    def require_owner(self) -> str:
        if not self.sync.owner_id:
            raise ConfigError("sync.owner_id is not set; run 'stronghold-sync init' first.")
        return self.sync.owner_id

    def remote_path(self, base: Path) -> Path:
        if self.sync.remote_dir:
            return Path(self.sync.remote_dir).expanduser()
        return base / "remote"


def settings_path(base_dir: Path | None = None) -> Path:
    base = ensure_config_structure(base_dir)
    return base / SETTINGS_FILE_NAME


def load_settings(base_dir: Path | None = None) -> Settings:
    """Load settings from the config directory; defaults when the file is missing."""
    path = settings_path(base_dir)
    if not path.exists():
        return Settings()
    return load_settings_from_path(path)


def load_settings_from_path(path: Path) -> Settings:
    try:
        raw_data = path.read_text()
    except OSError as exc:  # pragma: no cover - filesystem errors
        raise ConfigError(f"Unable to read settings file {path}: {exc}") from exc
    try:
        mapping = _parse_toml(raw_data)
    except ValueError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return _build_settings(mapping, path)


def save_settings(settings: Settings, base_dir: Path | None = None) -> Path:
    path = settings_path(base_dir)
    path.write_text(settings_to_toml(settings))
    return path


def settings_to_toml(settings: Settings) -> str:
    """Serialize Settings back to TOML text."""
    lines: List[str] = []

    def add_section(header: str, fields: Dict[str, Any]) -> None:
        fields = {key: value for key, value in fields.items() if value is not None}
        if not fields:
            return
        lines.append(header)
        for key, value in fields.items():
            lines.append(f"{key} = {_format_value(value)}")
        lines.append("")

    add_section(
        "[sync]",
        {
            "owner_id": settings.sync.owner_id,
            "interval_seconds": settings.sync.interval_seconds,
            "remote_dir": settings.sync.remote_dir,
        },
    )
    add_section(
        "[cache]",
        {
            "ttl_ms": settings.cache.ttl_ms,
            "max_size": settings.cache.max_size,
            "strategy": settings.cache.strategy,
            "slow_query_ms": settings.cache.slow_query_ms,
        },
    )
    add_section(
        "[device]",
        {
            "display_name": settings.device.display_name,
            "user_agent": settings.device.user_agent,
        },
    )
    content = "\n".join(lines).strip()
    return content + ("\n" if content else "")


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return '"' + escaped + '"'
    raise TypeError(f"Unsupported TOML value: {value!r}")


def _build_settings(data: Mapping[str, Any], path: Path) -> Settings:
    unknown = set(data) - {"sync", "cache", "device"}
    if unknown:
        raise ConfigError(f"Unknown section(s) {', '.join(sorted(unknown))} in {path}.")
    return Settings(
        sync=_load_sync(_optional_table(data, "sync", path), path),
        cache=_load_cache(_optional_table(data, "cache", path), path),
        device=_load_device(_optional_table(data, "device", path), path),
    )


def _load_sync(block: Mapping[str, Any], path: Path) -> SyncBlock:
    owner_id = _optional_str(block, "owner_id", "[sync]", path)
    interval = block.get("interval_seconds", 30.0)
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
        raise ConfigError(f"sync.interval_seconds must be a positive number in {path}.")
    return SyncBlock(
        owner_id=owner_id,
        interval_seconds=float(interval),
        remote_dir=_optional_str(block, "remote_dir", "[sync]", path),
    )


def _load_cache(block: Mapping[str, Any], path: Path) -> CacheBlock:
    defaults = CacheBlock()
    ttl_ms = _positive_int(block, "ttl_ms", defaults.ttl_ms, path)
    max_size = _positive_int(block, "max_size", defaults.max_size, path)
    slow_query_ms = _positive_int(block, "slow_query_ms", defaults.slow_query_ms, path)
    strategy = block.get("strategy", defaults.strategy)
    if strategy not in CACHE_STRATEGIES:
        raise ConfigError(
            f"cache.strategy '{strategy}' is not supported in {path}; use one of {', '.join(CACHE_STRATEGIES)}."
        )
    return CacheBlock(ttl_ms=ttl_ms, max_size=max_size, strategy=strategy, slow_query_ms=slow_query_ms)


def _load_device(block: Mapping[str, Any], path: Path) -> DeviceBlock:
    return DeviceBlock(
        display_name=_optional_str(block, "display_name", "[device]", path),
        user_agent=_optional_str(block, "user_agent", "[device]", path),
    )


def _optional_table(mapping: Mapping[str, Any], key: str, path: Path) -> Mapping[str, Any]:
    value = mapping.get(key, {})
    if not isinstance(value, Mapping):
        raise ConfigError(f"[{key}] must be a table in {path}.")
    return value


def _optional_str(block: Mapping[str, Any], key: str, section: str, path: Path) -> Optional[str]:
    value = block.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{section} field '{key}' must be a string in {path}.")
    return value or None


def _positive_int(block: Mapping[str, Any], key: str, default: int, path: Path) -> int:
    value = block.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"'{key}' must be a positive integer in {path}.")
    return value


def _parse_toml(text: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    target: Dict[str, Any] = result
    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("[") and line.endswith("]"):
            table_name = line[1:-1].strip()
            if not table_name or "." in table_name:
                raise ValueError(f"Invalid table name on line {lineno}.")
            target = result.setdefault(table_name, {})
            if not isinstance(target, dict):
                raise ValueError(f"Cannot reopen '{table_name}' as a table on line {lineno}.")
            continue
        if "=" not in line:
            raise ValueError(f"Expected 'key = value' on line {lineno}.")
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Missing key on line {lineno}.")
        if key in target:
            raise ValueError(f"Duplicate key '{key}' on line {lineno}.")
        target[key] = _parse_value(value.strip(), lineno)
    return result


def _parse_value(raw_value: str, lineno: int) -> Any:
    value = _strip_inline_comment(raw_value)
    if not value:
        raise ValueError(f"Missing value on line {lineno}.")
    if value.startswith('"') and value.endswith('"') and len(value) >= 2:
        inner = value[1:-1]
        return bytes(inner, "utf-8").decode("unicode_escape")
    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    digits = value.replace("_", "")
    if digits.lstrip("+-").isdigit():
        return int(digits)
    try:
        return float(digits)
    except ValueError:
        raise ValueError(f"Unsupported value {value!r} on line {lineno}.") from None


def _strip_inline_comment(value: str) -> str:
    result = []
    in_string = False
    escape = False
    for ch in value:
        if ch == '"' and not escape:
            in_string = not in_string
        if ch == "#" and not in_string:
            break
        result.append(ch)
        escape = ch == "\\" and not escape
    return "".join(result).strip()


__all__ = [
    "CACHE_STRATEGIES",
    "CONFIG_DIR_NAME",
    "CacheBlock",
    "ConfigError",
    "DeviceBlock",
    "SETTINGS_FILE_NAME",
    "SUBDIRECTORIES",
    "Settings",
    "SyncBlock",
    "ensure_config_structure",
    "get_base_config_dir",
    "is_windows",
    "load_settings",
    "load_settings_from_path",
    "save_settings",
    "settings_path",
    "settings_to_toml",
]
