"""
Render the standings images locally without touching Discord.

    python preview.py                       # scrape every league, write preview/standings.png
    python preview.py --html club50=page.html --out out/
    python preview.py --classes yellow      # also write the 2x2 class grid for a league
"""
import argparse
import asyncio
import sys
from pathlib import Path

import aiohttp

from config_store import BotConfig, ConfigError
from fetcher import FetchError
from leaderboard import build_class_panels, fetch_league, parse_league
from logger_config import logger
from render import render_class_grid_png, render_standings_png
from standings import StandingsParseError


def parse_html_overrides(values: list[str]) -> dict[str, Path]:
    overrides = {}
    for value in values or []:
        key, sep, path = value.partition("=")
        if not sep or not key.strip() or not path.strip():
            raise argparse.ArgumentTypeError(f"--html expects KEY=PATH, got {value!r}")
        overrides[key.strip()] = Path(path.strip())
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render OOR standings images locally.")
    parser.add_argument("--config", help="config.json to read leagues from (default: STANDINGS_CONFIG or ./config.json)")
    parser.add_argument("--html", action="append", default=[], metavar="KEY=PATH",
                        help="parse a saved page for one league instead of fetching it")
    parser.add_argument("--out", default="preview", help="output directory")
    parser.add_argument("--classes", action="append", default=[], metavar="KEY",
                        help="also render the class grid for this league")
    return parser


async def run(config: BotConfig, overrides: dict[str, Path], out_dir: Path, class_keys: list[str]) -> list[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []

    async with aiohttp.ClientSession() as session:
        standings = {}
        for league in config.leagues:
            if league.key in overrides:
                html = overrides[league.key].read_text(encoding="utf-8")
                standings[league.key] = parse_league(league, html, config.subtitle)
            else:
                standings[league.key] = await fetch_league(session, league, config.subtitle)
            logger.info(f"{league.name}: {len(standings[league.key].rows)} drivers")

        png = await render_standings_png(
            [standings[lg.key] for lg in config.leagues],
            [lg.tint for lg in config.leagues],
            watermark_url=config.watermark_url,
            fallback_flag_url=config.fallback_flag_url,
            session=session,
        )
        path = out_dir / "standings.png"
        path.write_bytes(png)
        written.append(path)

        for key in class_keys:
            league = config.league(key)
            if league is None:
                logger.warning(f"Unknown league key {key!r}, skipping class grid")
                continue
            png = await render_class_grid_png(
                build_class_panels(standings[key], league.name),
                watermark_url=config.watermark_url,
                fallback_flag_url=config.fallback_flag_url,
                session=session,
            )
            path = out_dir / f"class-{key}.png"
            path.write_bytes(png)
            written.append(path)

    return written


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        overrides = parse_html_overrides(args.html)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    try:
        config = BotConfig.load(args.config)
        written = asyncio.run(run(config, overrides, Path(args.out), args.classes))
    except (ConfigError, FetchError, StandingsParseError) as e:
        logger.error(f"Preview failed: {e}")
        return 1

    for path in written:
        logger.info(f"Wrote {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
