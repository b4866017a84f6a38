"""
OOR standings bot.

Scrapes the league standings pages on a timer, renders them into a single
leaderboard image and keeps one message in the configured channel up to date.
"""

import os
import platform
import sys
import traceback

import discord
from discord.ext import commands
from discord.ext.commands import Context
from dotenv import load_dotenv

from config_store import BotConfig, ConfigError
from logger_config import install_excepthook, logger

"""
Only default (non privileged) intents are needed: the bot posts, edits and
deletes its own messages and answers button / slash command interactions.
https://discordpy.readthedocs.io/en/latest/intents.html
"""
intents = discord.Intents.default()


class DiscordBot(commands.Bot):
    def __init__(self, config: BotConfig) -> None:
        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            help_command=None,
        )
        self.logger = logger
        self.config = config

    async def load_cogs(self) -> None:
        """
        Load every extension in the cogs/ directory.
        """
        for file in sorted(os.listdir(f"{os.path.realpath(os.path.dirname(__file__))}/cogs")):
            if file.endswith(".py"):
                extension = file[:-3]
                try:
                    await self.load_extension(f"cogs.{extension}")
                    self.logger.info(f"Loaded extension '{extension}'")
                except Exception as e:
                    exception = f"{type(e).__name__}: {e}"
                    self.logger.error(
                        f"Failed to load extension {extension}\n{exception}"
                    )
                    traceback.print_exc()

    async def sync_commands(self) -> None:
        guild_id = self.config.guild_id
        if guild_id:
            guild = discord.Object(id=guild_id)
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            self.logger.info(f"Synced {len(synced)} slash command(s) to guild {guild_id}")
        else:
            synced = await self.tree.sync()
            self.logger.info(f"Synced {len(synced)} global slash command(s) (may take a while to appear)")

    async def setup_hook(self) -> None:
        """
        This will just be executed when the bot starts the first time.
        """
        self.logger.info(f"discord.py API version: {discord.__version__}")
        self.logger.info(f"Python version: {platform.python_version()}")
        self.logger.info(
            f"Running on: {platform.system()} {platform.release()} ({os.name})"
        )
        self.logger.info("-------------------")
        await self.load_cogs()
        try:
            await self.sync_commands()
        except discord.HTTPException as e:
            self.logger.error(f"Slash command sync failed: {e}")

    async def on_ready(self) -> None:
        self.logger.info(f"Logged in as {self.user} (ID: {self.user.id})")

    async def on_command_error(self, context: Context, error) -> None:
        """
        Mentions that don't match a command are ignored, everything else is logged.
        """
        if isinstance(error, commands.CommandNotFound):
            return
        self.logger.error(f"Command error: {type(error).__name__}: {error}")


def main() -> None:
    load_dotenv()
    install_excepthook(logger)
    try:
        config = BotConfig.load()
        token = config.token
    except ConfigError as e:
        sys.exit(str(e))

    bot = DiscordBot(config)
    bot.run(token, log_handler=None)


if __name__ == "__main__":
    main()
