from __future__ import annotations

import asyncio
import io
import math
import time
from typing import Optional

import aiohttp
import discord
from discord import app_commands
from discord.ext import commands, tasks

from config_store import BotConfig
from leaderboard import build_class_panels, data_hash, scrape_leagues, status_content
from logger_config import logger
from render import ImageCache, render_class_grid_png, render_standings_png
from standings import Standings

BUTTON_PREFIX = "oor_class_"


def trace(msg: str) -> None:
    logger.debug(f"CHECK_AND_POST → {msg}")


def png_file(png: bytes, filename: str) -> discord.File:
    return discord.File(io.BytesIO(png), filename=filename)


def ttl_text(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'' if minutes == 1 else 's'}"
    return f"{int(seconds)} seconds"


class ClassSplitView(discord.ui.View):
    """
    One grey button per class-split league. Custom ids are stable so the view
    keeps working on messages posted before a restart: register it with
    bot.add_view(...) on startup.
    """
    def __init__(self, leagues, on_click):
        super().__init__(timeout=None)
        self.on_click = on_click
        for league in leagues:
            if not league.class_split:
                continue
            button = discord.ui.Button(
                label=league.button_label,
                style=discord.ButtonStyle.secondary,
                custom_id=f"{BUTTON_PREFIX}{league.key}",
            )
            button.callback = self._generate_callback(league.key)
            self.add_item(button)

    def _generate_callback(self, key: str):
        async def callback(interaction: discord.Interaction):
            await self.on_click(interaction, key)
        return callback


class StandingsCog(commands.Cog, name="standings"):
    def __init__(self, bot, config: BotConfig | None = None) -> None:
        self.bot = bot
        self.config: BotConfig = config or bot.config
        self.latest: dict[str, Standings] = {}
        self.images = ImageCache()
        self.session: Optional[aiohttp.ClientSession] = None
        self.view: Optional[ClassSplitView] = None

        self.post_lock = asyncio.Lock()
        self.last_refresh_at: Optional[float] = None
        self.button_cooldowns: dict[int, float] = {}
        self._cleanup_tasks: set[asyncio.Task] = set()

    async def cog_load(self) -> None:
        self.session = aiohttp.ClientSession()
        self.bot.add_view(self.buttons())
        self.check_standings.change_interval(minutes=self.config.check_interval_minutes)
        self.check_standings.start()
        logger.info(f"Standings check every {self.config.check_interval_minutes:g} minutes for {len(self.config.leagues)} leagues")

    async def cog_unload(self) -> None:
        self.check_standings.cancel()
        for task in list(self._cleanup_tasks):
            task.cancel()
        if self.session is not None:
            await self.session.close()

    def buttons(self) -> ClassSplitView:
        if self.view is None:
            self.view = ClassSplitView(self.config.leagues, self.handle_class_button)
        return self.view

    def http(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    # ---------- scrape / render ----------

    async def scrape_all(self) -> dict[str, Standings]:
        return await scrape_leagues(self.http(), self.config.leagues, self.config.subtitle)

    async def render_main(self, standings: dict[str, Standings]) -> bytes:
        leagues = self.config.leagues
        return await render_standings_png(
            [standings[lg.key] for lg in leagues],
            [lg.tint for lg in leagues],
            watermark_url=self.config.watermark_url,
            fallback_flag_url=self.config.fallback_flag_url,
            session=self.http(),
            cache=self.images,
        )

    async def render_classes(self, key: str) -> tuple[str, bytes]:
        league = self.config.league(key)
        data = self.latest.get(key)
        if league is None or data is None:
            raise LookupError("No cached standings yet — wait for the next scrape.")
        panels = build_class_panels(data, league.name)
        png = await render_class_grid_png(
            panels,
            watermark_url=self.config.watermark_url,
            fallback_flag_url=self.config.fallback_flag_url,
            session=self.http(),
            cache=self.images,
        )
        return league.name, png

    # ---------- channel helpers ----------

    async def resolve_channel(self) -> discord.abc.Messageable:
        channel_id = self.config.channel_id
        channel = self.bot.get_channel(channel_id) or await self.bot.fetch_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            raise TypeError("Configured channel_id is not a text channel")
        return channel

    def content(self, last_updated: str, last_checked: str) -> str:
        return status_content(self.config.headline, self.config.results_url, last_updated, last_checked)

    async def edit_status_only(self, channel, last_updated: str, last_checked: str) -> bool:
        """Refresh the timestamps on the posted message. False when it is gone."""
        try:
            message = await channel.fetch_message(int(self.config.message_id))
            await message.edit(content=self.content(last_updated, last_checked), view=self.buttons())
            return True
        except (discord.HTTPException, ValueError) as e:
            logger.warning(f"Existing standings message missing ({e}), will post new.")
            return False

    async def delete_message(self, channel, message_id) -> None:
        try:
            message = await channel.fetch_message(int(message_id))
            await message.delete()
            trace(f"Deleted old message → id={message_id}")
        except (discord.HTTPException, ValueError) as e:
            logger.warning(f"Could not delete old message {message_id}: {e}")

    async def upsert_message(self, channel, content: str, png: bytes) -> int:
        """Edit the tracked message in place, or post a fresh one if that fails."""
        if self.config.message_id:
            try:
                message = await channel.fetch_message(int(self.config.message_id))
                await message.edit(
                    content=content,
                    attachments=[png_file(png, "standings.png")],
                    view=self.buttons(),
                )
                return message.id
            except (discord.HTTPException, ValueError) as e:
                logger.warning(f"Could not edit standings message ({e}), posting new.")
        sent = await channel.send(content=content, file=png_file(png, "standings.png"), view=self.buttons())
        return sent.id

    # ---------- scheduled check ----------

    @tasks.loop(minutes=15.0)
    async def check_standings(self) -> None:
        await self.check_and_post()

    @check_standings.before_loop
    async def before_check_standings(self) -> None:
        await self.bot.wait_until_ready()

    async def check_and_post(self) -> None:
        """
        Scrape, compare against the stored hash and either touch the
        "last checked" stamp or post a freshly rendered image.

        A failed scrape leaves the current message alone.
        """
        last_checked = discord.utils.format_dt(discord.utils.utcnow(), "F")

        async with self.post_lock:
            try:
                channel = await self.resolve_channel()
                standings = await self.scrape_all()

                digest = data_hash(standings)
                unchanged = bool(self.config.last_hash) and self.config.last_hash == digest
                trace("DATA UNCHANGED (hash match)" if unchanged else "DATA CHANGED (hash differs)")

                # Buttons always work off the newest scrape
                self.latest = standings
                last_updated = (self.config.last_updated or last_checked) if unchanged else last_checked

                if unchanged and self.config.message_id:
                    trace(f"UNCHANGED + message_id present ({self.config.message_id}) → attempting edit")
                    if await self.edit_status_only(channel, last_updated, last_checked):
                        trace("UNCHANGED + edit SUCCESS → updated last checked only")
                        self.config.update_state(last_checked=last_checked)
                        self.config.save()
                        return
                    trace("UNCHANGED but message MISSING → will POST NEW message")

                old_message_id = self.config.message_id
                png = await self.render_main(standings)
                sent = await channel.send(
                    content=self.content(last_updated, last_checked),
                    file=png_file(png, "standings.png"),
                    view=self.buttons(),
                )
                trace(f"NEW message posted → id={sent.id}")

                if not unchanged and old_message_id:
                    await self.delete_message(channel, old_message_id)

                self.config.update_state(
                    message_id=sent.id,
                    last_hash=digest,
                    last_updated=last_updated,
                    last_checked=last_checked,
                )
                self.config.save()
                logger.info(
                    "Message missing but data unchanged; posted new message to restore it."
                    if unchanged else "Standings changed; posted new message."
                )
            except Exception as e:
                logger.exception(f"Standings check blocked (keeping existing message): {e}")
                self.config.update_state(last_checked=last_checked)
                try:
                    self.config.save()
                except OSError as save_error:
                    logger.error(f"Could not save config after blocked check: {save_error}")

    async def refresh_now(self) -> None:
        """Scrape, render and upsert regardless of the stored hash."""
        last_checked = discord.utils.format_dt(discord.utils.utcnow(), "F")
        async with self.post_lock:
            channel = await self.resolve_channel()
            standings = await self.scrape_all()
            digest = data_hash(standings)
            unchanged = self.config.last_hash == digest
            last_updated = (self.config.last_updated or last_checked) if unchanged else last_checked

            png = await self.render_main(standings)
            message_id = await self.upsert_message(channel, self.content(last_updated, last_checked), png)

            self.latest = standings
            self.config.update_state(
                message_id=message_id,
                last_hash=digest,
                last_updated=last_updated,
                last_checked=last_checked,
            )
            self.config.save()

    # ---------- interactions ----------

    async def reply_ephemeral(self, interaction: discord.Interaction, text: str) -> None:
        await interaction.edit_original_response(content=text)
        self.schedule_reply_cleanup(interaction)

    def schedule_reply_cleanup(self, interaction: discord.Interaction) -> None:
        delay = float(self.config.ephemeral_ttl_seconds)

        async def cleanup():
            await asyncio.sleep(delay)
            try:
                await interaction.delete_original_response()
            except discord.HTTPException as e:
                logger.debug(f"Ephemeral reply already gone: {e}")

        task = asyncio.create_task(cleanup())
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    def button_wait(self, user_id: int, now: float) -> float:
        cooldown = float(self.config.button_cooldown_seconds)
        self.button_cooldowns = {
            uid: t for uid, t in self.button_cooldowns.items() if now - t < cooldown
        }
        last = self.button_cooldowns.get(user_id)
        if last is None:
            return 0.0
        return cooldown - (now - last)

    async def handle_class_button(self, interaction: discord.Interaction, key: str) -> None:
        if not interaction.response.is_done():
            await interaction.response.defer(ephemeral=True, thinking=True)

        now = time.monotonic()
        wait = self.button_wait(interaction.user.id, now)
        if wait > 0:
            await self.reply_ephemeral(interaction, f"Please wait {math.ceil(wait)}s before using that button again.")
            return

        try:
            name, png = await self.render_classes(key)
            self.button_cooldowns[interaction.user.id] = now

            ttl = float(self.config.class_message_ttl_seconds)
            await interaction.channel.send(
                content=f"**{name} by Class** (auto-generated)\nThis message will self-delete in **{ttl_text(ttl)}**.",
                file=png_file(png, f"class-{key}.png"),
                delete_after=ttl,
            )
            logger.info(f"Posted class render for {key} (requested by {interaction.user} (ID: {interaction.user.id}))")
            await self.reply_ephemeral(interaction, f"Posted the class standings render (will self-delete in {ttl_text(ttl)}).")
        except Exception as e:
            logger.exception(f"Class render for {key} failed: {e}")
            await self.reply_ephemeral(interaction, f"Failed: {e}")

    @app_commands.command(name="refresh", description="Force a standings refresh now")
    async def refresh(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True, thinking=True)

        now = time.monotonic()
        cooldown = float(self.config.refresh_cooldown_seconds)
        if self.last_refresh_at is not None and now - self.last_refresh_at < cooldown:
            wait = math.ceil(cooldown - (now - self.last_refresh_at))
            await self.reply_ephemeral(interaction, f"Please wait {wait}s before refreshing again.")
            return

        if self.post_lock.locked():
            await self.reply_ephemeral(interaction, "A refresh is already running, try again in a moment.")
            return

        self.last_refresh_at = now
        try:
            await self.refresh_now()
            logger.info(f"Manual refresh by {interaction.user} (ID: {interaction.user.id})")
            await self.reply_ephemeral(interaction, "✅ Refreshed and updated the standings message.")
        except Exception as e:
            logger.exception(f"Manual refresh failed: {e}")
            await self.reply_ephemeral(interaction, f"❌ Refresh failed: {e}")


async def setup(bot) -> None:
    await bot.add_cog(StandingsCog(bot))
