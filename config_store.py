"""
config.json handling: loading, validation, legacy migration and saving.

The same file also carries the small amount of state the bot needs between
restarts (posted message id, data hash, timestamps), mirroring how the rest
of the bot keeps its JSON files next to the code.
"""
from __future__ import annotations

import json
import os
import re
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from logger_config import logger

DEFAULT_CONFIG_PATH = Path(os.path.realpath(os.path.dirname(__file__))) / "config.json"

DEVEXPRESS_TABLE_ID = "PageContent_TeamsView_DXMainTable"
SOURCES = ("devexpress", "simgrid")

DEFAULTS: dict[str, Any] = {
    "guild_id": None,
    "check_interval_minutes": 15,
    "headline": "OCTANE ONLINE RACING STANDINGS - Click here for Full OOR Results Pages",
    "results_url": "https://results.octaneonlineracing.com/",
    "subtitle": "Auto-updates when OOR standings change",
    "watermark_url": "https://octaneonlineracing.com/wp-content/uploads/2022/12/cropped-OOR-HEADER-2.0-01.png",
    "fallback_flag_url": "https://icons.iconarchive.com/icons/wikipedia/flags/64/UN-United-Nations-Flag-icon.png",
    "button_cooldown_seconds": 15,
    "refresh_cooldown_seconds": 30,
    "class_message_ttl_seconds": 300,
    "ephemeral_ttl_seconds": 10,
}

STATE_KEYS = ("message_id", "last_hash", "last_updated", "last_checked")

# Legacy flat keys -> (league key, display name, tint, class split, button label)
LEGACY_LEAGUES = (
    ("standingsUrl", "club50", "Club 50 Standings", "#2b6cff", False, ""),
    ("sprintSplitYellowStandingURL", "yellow", "Split Yellow Sprint Standings", "#f6c343", True,
     "🟡 Split Yellow Standings by Class"),
    ("sprintSplitRedStandingURL", "red", "Split Red Sprint Standings", "#ff3b3b", True,
     "🔴 Split Red Standings by Class"),
)

LEGACY_RENAMES = {
    "channelId": "channel_id",
    "guildId": "guild_id",
    "messageId": "message_id",
    "lastHash": "last_hash",
    "lastUpdated": "last_updated",
    "lastChecked": "last_checked",
}

_CRON_EVERY_RE = re.compile(r"^\*/(\d+)\s+\*\s+\*\s+\*\s+\*$")


class ConfigError(Exception):
    """config.json is missing or lacks a required value."""


@dataclass
class LeagueConfig:
    key: str
    name: str
    url: str
    source: str = "devexpress"
    table_id: Optional[str] = DEVEXPRESS_TABLE_ID
    tint: str = ""
    class_split: bool = False
    button_label: str = ""
    require_car_images: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "LeagueConfig":
        for name in ("key", "name", "url"):
            value = data.get(name)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"Missing {name} in league entry {data!r}")
        source = data.get("source", "devexpress")
        if source not in SOURCES:
            raise ConfigError(f"Unknown source {source!r} for league {data['key']!r}")
        return cls(
            key=data["key"].strip(),
            name=data["name"].strip(),
            url=data["url"].strip(),
            source=source,
            table_id=data.get("table_id", DEVEXPRESS_TABLE_ID if source == "devexpress" else None),
            tint=data.get("tint", ""),
            class_split=bool(data.get("class_split", False)),
            button_label=data.get("button_label") or f"{data['name'].strip()} by Class",
            require_car_images=bool(data.get("require_car_images", source == "devexpress")),
        )

    @property
    def marker(self) -> Optional[str]:
        return DEVEXPRESS_TABLE_ID if self.source == "devexpress" else None


def cron_to_minutes(expr: str) -> Optional[int]:
    """Only the '*/N * * * *' form maps onto a fixed interval."""
    m = _CRON_EVERY_RE.match((expr or "").strip())
    return int(m.group(1)) if m else None


def migrate_legacy(data: dict) -> bool:
    """Rewrite a camelCase config in place. Returns True when anything changed."""
    changed = False

    if not str(data.get("sprintSplitYellowStandingURL") or "").strip() and str(data.get("sprintStandingsURL") or "").strip():
        data["sprintSplitYellowStandingURL"] = data.pop("sprintStandingsURL")
        logger.info("Migrated config: sprintStandingsURL -> sprintSplitYellowStandingURL")
        changed = True

    for old, new in LEGACY_RENAMES.items():
        if old in data:
            value = data.pop(old)
            data.setdefault(new, value)
            changed = True

    if "checkCron" in data:
        expr = data.pop("checkCron")
        minutes = cron_to_minutes(expr)
        if minutes is None:
            logger.warning(f"Cannot translate checkCron {expr!r}; using {DEFAULTS['check_interval_minutes']} minutes")
        else:
            data.setdefault("check_interval_minutes", minutes)
        changed = True

    if "leagues" not in data and any(k[0] in data for k in LEGACY_LEAGUES):
        leagues = []
        for url_key, key, name, tint, class_split, label in LEGACY_LEAGUES:
            url = str(data.pop(url_key, "") or "").strip()
            if not url:
                continue
            entry = {"key": key, "name": name, "url": url, "tint": tint, "class_split": class_split}
            if label:
                entry["button_label"] = label
            leagues.append(entry)
        data["leagues"] = leagues
        changed = True

    if changed:
        logger.info("Migrated legacy config.json layout")
    return changed


class BotConfig:
    def __init__(self, data: dict, path: Path | str = DEFAULT_CONFIG_PATH) -> None:
        self.path = Path(path)
        self.data = data
        self.leagues = [LeagueConfig.from_dict(d) for d in data.get("leagues") or []]
        self.validate()

    @classmethod
    def load(cls, path: Path | str | None = None) -> "BotConfig":
        path = Path(path or os.getenv("STANDINGS_CONFIG") or DEFAULT_CONFIG_PATH)
        if not path.is_file():
            raise ConfigError(f"'{path.name}' not found! Please add it and try again.")
        with open(path, encoding="utf-8") as file:
            data = json.load(file)
        migrated = migrate_legacy(data)
        config = cls(data, path)
        if migrated:
            config.save()
        return config

    def validate(self) -> None:
        channel = self.data.get("channel_id")
        if channel in (None, "") or not str(channel).strip().isdigit():
            raise ConfigError("Missing channel_id in config.json")
        if not self.leagues:
            raise ConfigError("Missing leagues in config.json")
        keys = [league.key for league in self.leagues]
        if len(set(keys)) != len(keys):
            raise ConfigError(f"Duplicate league keys in config.json: {keys}")
        if self.check_interval_minutes <= 0:
            raise ConfigError("check_interval_minutes must be positive")

    def get(self, key: str):
        return self.data.get(key, DEFAULTS.get(key))

    def __getattr__(self, name: str):
        # Plain settings/state read straight from the JSON with defaults
        if name in DEFAULTS or name in STATE_KEYS:
            return self.get(name)
        raise AttributeError(name)

    @property
    def channel_id(self) -> int:
        return int(self.data["channel_id"])

    @property
    def guild_id(self) -> Optional[int]:
        value = self.data.get("guild_id")
        if value in (None, "") or not str(value).strip().isdigit():
            return None
        return int(value)

    @property
    def check_interval_minutes(self) -> float:
        return float(self.get("check_interval_minutes"))

    @property
    def token(self) -> str:
        token = os.getenv("TOKEN") or self.data.get("token") or ""
        if not token.strip():
            raise ConfigError("Missing TOKEN (environment) or token in config.json")
        return token.strip()

    def league(self, key: str) -> Optional[LeagueConfig]:
        return next((lg for lg in self.leagues if lg.key == key), None)

    def update_state(self, **values) -> None:
        for key, value in values.items():
            if key not in STATE_KEYS:
                raise KeyError(key)
            self.data[key] = value

    def save(self) -> None:
        """Write atomically so a crash mid-save never leaves half a config."""
        self.data["leagues"] = [asdict(lg) for lg in self.leagues]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file:
                json.dump(self.data, file, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
