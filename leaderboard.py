import hashlib
import json
import re
from dataclasses import replace

import aiohttp

from config_store import LeagueConfig
from fetcher import fetch_html
from logger_config import logger
from standings import (
    Standings,
    build_standings,
    parse_devexpress_standings,
    parse_simgrid_standings,
    validate_rows,
)

CLASS_ORDER = ("Pro", "Silver", "Pro-Am", "Am")
CLASS_SUBTITLE = "Auto-generated (Diff reset per class leader)"

_NUMERIC_RE = re.compile(r"[^\d.-]")
_SEASON_RE = re.compile(r"Season\s+(\d+)", re.IGNORECASE)


def data_hash(standings_by_key: dict[str, Standings]) -> str:
    """SHA-1 over every league's title, subtitle and rows."""
    payload = {key: s.to_dict() for key, s in standings_by_key.items()}
    blob = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha1(blob.encode("utf-8")).hexdigest()


def to_number(value) -> float:
    cleaned = _NUMERIC_RE.sub("", str(value or ""))
    if not cleaned:
        return 0
    try:
        return float(cleaned)
    except ValueError:
        return 0


def format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def season_from_title(title: str) -> str:
    m = _SEASON_RE.search(title or "")
    return m.group(1) if m else "??"


def build_class_panels(standings: Standings, split_label: str) -> list[Standings]:
    """
    Split one league into Pro / Silver / Pro-Am / Am panels.

    Positions are renumbered inside each class and Diff is measured from the
    class leader's Nett points.
    """
    season = season_from_title(standings.title)
    panels = []
    for cls in CLASS_ORDER:
        class_rows = [
            r for r in standings.rows
            if r.class_name.strip().lower() == cls.lower()
        ]
        class_rows.sort(key=lambda r: to_number(r.pos))

        rebuilt = []
        if class_rows:
            leader_nett = to_number(class_rows[0].nett)
            for i, row in enumerate(class_rows):
                diff = 0 if i == 0 else to_number(row.nett) - leader_nett
                rebuilt.append(replace(row, pos=str(i + 1), diff=format_number(diff)))

        panels.append(Standings(
            title=f"{cls} — {split_label} — Season {season} ({len(rebuilt)} drivers)",
            subtitle=CLASS_SUBTITLE,
            rows=rebuilt,
        ))
    return panels


def status_content(headline: str, link: str, last_updated: str, last_checked: str) -> str:
    title = f"[{headline}]({link})" if link else headline
    return (
        f"**{title}**\n"
        f"Last updated: **{last_updated}**\n"
        f"Last checked: **{last_checked}**"
    )


# ---------- league scraping ----------

def parse_league(league: LeagueConfig, html: str, subtitle: str = "") -> Standings:
    if league.source == "simgrid":
        rows = parse_simgrid_standings(html, label=league.name)
    else:
        rows = parse_devexpress_standings(
            html, table_id=league.table_id, base_url=league.url, label=league.name
        )
    validate_rows(rows, league.name, require_car_images=league.require_car_images)
    return build_standings(rows, league.name, league.url, subtitle)


async def fetch_league(session: aiohttp.ClientSession, league: LeagueConfig, subtitle: str = "") -> Standings:
    html = await fetch_html(session, league.url, marker=league.marker)
    return parse_league(league, html, subtitle)


async def scrape_leagues(
    session: aiohttp.ClientSession,
    leagues: list[LeagueConfig],
    subtitle: str = "",
) -> dict[str, Standings]:
    """Fetch every league in order; the first failure aborts the whole scrape."""
    results = {}
    for league in leagues:
        results[league.key] = await fetch_league(session, league, subtitle)
        logger.debug(f"{league.name}: {len(results[league.key].rows)} drivers")
    return results
