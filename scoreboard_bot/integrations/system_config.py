"""
Config loading utilities for the scoreboard bot.

Responsibilities:
 - Optionally hydrate environment variables from one or more `.env` files
 - Load per-guild settings from `servers.json` into typed dataclasses
 - Merge guild overrides on top of DEFAULT_CONFIG
 - Provide a helper to assert required keys at startup
"""
from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from dotenv import load_dotenv

from scoreboard_bot.core.engines.base.logging_utils import get_logger
from scoreboard_bot.core.errors import ConfigurationError

logger = get_logger("system_config")

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_SERVERS_CANDIDATES: Sequence[Path] = (
    PROJECT_ROOT / "config" / "servers.json",
    PROJECT_ROOT / "servers.json",
)
DEFAULT_ENV_PATHS: Sequence[Path] = (
    PROJECT_ROOT / ".env",
    PROJECT_ROOT / "config" / ".env",
)

DEFAULT_ALPHABET = (
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "ąćęłńóśźżĄĆĘŁŃÓŚŹŻ0123456789.,;:!?-_()[]{}/\"© "
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "enabled": True,
    "target_roles": {},
    "role_display_names": {},
    "allowed_punish_roles": [],
    "timezone": "Europe/Warsaw",
    "session_timeout_seconds": 600,
    "reservation_seconds": 300,
    "ping_interval_seconds": 30,
    "match_threshold": 0.7,
    "auto_resolve_majority": False,
    "ocr": {
        "alphabet": DEFAULT_ALPHABET,
        "language": "pol+eng",
        "min_line_length": 5,
        "preprocessing": {
            "white_threshold": 180,
            "contrast": 2.5,
            "brightness": 20,
            "gamma": 1.8,
            "median": 3,
            "blur": 0.3,
            "upscale": 4.0,
        },
        "save_processed": True,
        "processed_dir": "processed_ocr",
        "max_processed_files": 400,
        "temp_dir": "temp",
        "detailed_logging": {
            "enabled": False,
            "similarity_threshold": 0.3,
        },
    },
    "point_limits": {
        "punishment_role": 2,
        "lottery_ban": 3,
    },
}


@dataclass(frozen=True)
class PreprocessingConfig:
    white_threshold: int = 180
    contrast: float = 2.5
    brightness: float = 20
    gamma: float = 1.8
    median: int = 3
    blur: float = 0.3
    upscale: float = 4.0


@dataclass(frozen=True)
class DetailedLoggingConfig:
    enabled: bool = False
    similarity_threshold: float = 0.3


@dataclass(frozen=True)
class OCRConfig:
    alphabet: str = DEFAULT_ALPHABET
    language: str = "pol+eng"
    min_line_length: int = 5
    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    save_processed: bool = True
    processed_dir: Path = PROJECT_ROOT / "processed_ocr"
    max_processed_files: int = 400
    temp_dir: Path = PROJECT_ROOT / "temp"
    detailed_logging: DetailedLoggingConfig = field(default_factory=DetailedLoggingConfig)


@dataclass(frozen=True)
class PointLimits:
    punishment_role: int = 2
    lottery_ban: int = 3


@dataclass(frozen=True)
class GuildConfig:
    """Resolved settings for one guild."""

    guild_id: int
    target_roles: Dict[str, int] = field(default_factory=dict)
    role_display_names: Dict[str, str] = field(default_factory=dict)
    allowed_punish_roles: List[int] = field(default_factory=list)
    timezone: str = "Europe/Warsaw"
    session_timeout_seconds: float = 600
    reservation_seconds: float = 300
    ping_interval_seconds: float = 30
    match_threshold: float = 0.7
    auto_resolve_majority: bool = False
    ocr: OCRConfig = field(default_factory=OCRConfig)
    point_limits: PointLimits = field(default_factory=PointLimits)

    def clan_label(self, clan: str) -> str:
        return self.role_display_names.get(clan, clan)

    def clan_role(self, clan: str) -> int:
        try:
            return self.target_roles[clan]
        except KeyError:
            raise ConfigurationError(
                f"Clan '{clan}' is not configured for this server",
                context={"guild_id": self.guild_id, "clan": clan},
            ) from None


def _as_path(value: Optional[str | Path]) -> Optional[Path]:
    if value is None:
        return None
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (PROJECT_ROOT / path).resolve()
    return path


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_dotenv_files(paths: Optional[Iterable[str | Path]] = None) -> Sequence[Path]:
    """
    Load one or more .env files into os.environ (best-effort).
    Returns the collection of files that were processed.
    """
    processed: list[Path] = []
    for raw in paths or DEFAULT_ENV_PATHS:
        path = _as_path(raw)
        if not path or not path.exists():
            continue
        if load_dotenv(dotenv_path=str(path)):
            processed.append(path)
    return tuple(processed)


def build_guild_config(guild_id: int, raw: Mapping[str, Any]) -> GuildConfig:
    """Merge ``raw`` over DEFAULT_CONFIG and convert it into a GuildConfig."""
    data = _deep_merge(DEFAULT_CONFIG, raw)
    ocr = data["ocr"]
    try:
        return GuildConfig(
            guild_id=int(guild_id),
            target_roles={str(k): int(v) for k, v in data["target_roles"].items()},
            role_display_names={str(k): str(v) for k, v in data["role_display_names"].items()},
            allowed_punish_roles=[int(r) for r in data["allowed_punish_roles"]],
            timezone=str(data["timezone"]),
            session_timeout_seconds=float(data["session_timeout_seconds"]),
            reservation_seconds=float(data["reservation_seconds"]),
            ping_interval_seconds=float(data["ping_interval_seconds"]),
            match_threshold=float(data["match_threshold"]),
            auto_resolve_majority=bool(data["auto_resolve_majority"]),
            ocr=OCRConfig(
                alphabet=str(ocr["alphabet"]),
                language=str(ocr["language"]),
                min_line_length=int(ocr["min_line_length"]),
                preprocessing=PreprocessingConfig(**ocr["preprocessing"]),
                save_processed=bool(ocr["save_processed"]),
                processed_dir=_as_path(ocr["processed_dir"]),
                max_processed_files=int(ocr["max_processed_files"]),
                temp_dir=_as_path(ocr["temp_dir"]),
                detailed_logging=DetailedLoggingConfig(**ocr["detailed_logging"]),
            ),
            point_limits=PointLimits(**data["point_limits"]),
        )
    except (TypeError, ValueError, KeyError) as exc:
        raise ConfigurationError(
            f"Invalid configuration for guild {guild_id}: {exc}",
            context={"guild_id": guild_id},
        ) from exc


class ServerConfigRegistry:
    """Per-guild configuration loaded from servers.json."""

    def __init__(self, configs: Optional[Mapping[int, GuildConfig]] = None) -> None:
        self._configs: Dict[int, GuildConfig] = dict(configs or {})

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ServerConfigRegistry":
        configs: Dict[int, GuildConfig] = {}
        for key, raw in data.items():
            if key.startswith("_") or not isinstance(raw, Mapping):
                continue
            if raw.get("enabled") is False:
                logger.warning("Server %s is disabled in configuration", key)
                continue
            configs[int(key)] = build_guild_config(int(key), raw)
        return cls(configs)

    @classmethod
    def load(cls, json_path: Optional[str | Path] = None) -> "ServerConfigRegistry":
        """
        Load servers.json from ``json_path``, ``SCOREBOARD_SERVERS_JSON`` or the default candidates.
        A missing file yields an empty registry (every guild then fails with ConfigurationError).
        """
        path = _as_path(json_path or os.getenv("SCOREBOARD_SERVERS_JSON"))
        if path is None:
            path = next((c for c in DEFAULT_SERVERS_CANDIDATES if c.exists()), DEFAULT_SERVERS_CANDIDATES[0])
        if not path.exists():
            logger.warning("servers.json not found at %s; no guild is configured", path)
            return cls()
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a JSON object keyed by guild id")
        registry = cls.from_mapping(data)
        logger.info("Loaded configuration for %d server(s)", len(registry))
        return registry

    def __len__(self) -> int:
        return len(self._configs)

    def __contains__(self, guild_id: object) -> bool:
        return guild_id in self._configs

    def guild_ids(self) -> List[int]:
        return list(self._configs)

    def get(self, guild_id: int) -> GuildConfig:
        try:
            return self._configs[guild_id]
        except KeyError:
            raise ConfigurationError(
                "This server is not configured for score tracking",
                context={"guild_id": guild_id},
            ) from None


def load_config(
    *,
    dotenv_paths: Optional[Iterable[str | Path]] = None,
    servers_json: Optional[str | Path] = None,
) -> ServerConfigRegistry:
    """
    High-level helper: process .env files, then load servers.json.

    Parameters:
        dotenv_paths: iterable of .env paths (defaults to project root fallbacks)
        servers_json: path to servers.json (defaults to SCOREBOARD_SERVERS_JSON or config/servers.json)
    """
    load_dotenv_files(dotenv_paths)
    return ServerConfigRegistry.load(servers_json)


def require_keys(keys: Iterable[str], *, source: Optional[Mapping[str, str]] = None) -> None:
    """
    Validate that all required keys exist in the environment (or provided mapping).
    Raises ConfigurationError listing any missing keys.
    """
    env = source if source is not None else os.environ
    missing = [key for key in keys if not env.get(key)]
    if missing:
        raise ConfigurationError(f"Missing required environment keys: {', '.join(missing)}")
