"""
Tests for the standings cog: change detection against Discord, the /refresh
command and the class-split buttons. Discord objects are mocked throughout.
"""

import time
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from cogs.standings import BUTTON_PREFIX, ClassSplitView, StandingsCog, ttl_text
from config_store import BotConfig
from leaderboard import data_hash
from standings import Standings, StandingsParseError, StandingsRow


def _config(tmp_path, **overrides):
    data = {
        "channel_id": "1000",
        "ephemeral_ttl_seconds": 0,
        "leagues": [
            {"key": "club50", "name": "Club 50 Standings", "url": "https://r.example.com/S.aspx?s=1"},
            {"key": "yellow", "name": "Split Yellow", "url": "https://r.example.com/S.aspx?s=2",
             "class_split": True, "button_label": "🟡 Split Yellow Standings by Class"},
        ],
    }
    data.update(overrides)
    return BotConfig(data, tmp_path / "config.json")


def _standings(nett="100"):
    rows = [StandingsRow(pos="1", driver="Alice", class_name="Pro", nett=nett)]
    return {
        "club50": Standings(title="Club 50 Standings — Season 1 (1 drivers)", rows=rows),
        "yellow": Standings(title="Split Yellow — Season 2 (1 drivers)", rows=rows),
    }


def _not_found():
    return discord.NotFound(MagicMock(status=404, reason="Not Found"), "Unknown Message")


def _channel(existing=None):
    channel = MagicMock()
    channel.send = AsyncMock(return_value=MagicMock(id=222))
    if existing is None:
        channel.fetch_message = AsyncMock(side_effect=_not_found())
    else:
        channel.fetch_message = AsyncMock(return_value=existing)
    return channel


def _message(message_id=111):
    message = MagicMock(id=message_id)
    message.edit = AsyncMock()
    message.delete = AsyncMock()
    return message


def _interaction(user_id=5):
    interaction = MagicMock()
    interaction.user.id = user_id
    interaction.response.is_done = MagicMock(return_value=False)
    interaction.response.defer = AsyncMock()
    interaction.edit_original_response = AsyncMock()
    interaction.delete_original_response = AsyncMock()
    interaction.channel.send = AsyncMock()
    return interaction


def _cog(tmp_path, channel, standings=None, **overrides):
    cog = StandingsCog(MagicMock(), _config(tmp_path, **overrides))
    cog.resolve_channel = AsyncMock(return_value=channel)
    cog.scrape_all = AsyncMock(return_value=standings or _standings())
    cog.render_main = AsyncMock(return_value=b"png")
    return cog


def _replies(interaction):
    return [c.kwargs["content"] for c in interaction.edit_original_response.await_args_list]


def test_ttl_text():
    assert ttl_text(300) == "5 minutes"
    assert ttl_text(60) == "1 minute"
    assert ttl_text(45) == "45 seconds"


@pytest.mark.asyncio
async def test_view_has_one_button_per_class_split_league(tmp_path):
    on_click = AsyncMock()
    view = ClassSplitView(_config(tmp_path).leagues, on_click)

    assert view.timeout is None
    assert [b.custom_id for b in view.children] == [f"{BUTTON_PREFIX}yellow"]
    assert view.children[0].label == "🟡 Split Yellow Standings by Class"

    interaction = _interaction()
    await view.children[0].callback(interaction)
    on_click.assert_awaited_once_with(interaction, "yellow")


class TestCheckAndPost:
    @pytest.mark.asyncio
    async def test_first_run_posts_new_message(self, tmp_path):
        channel = _channel()
        cog = _cog(tmp_path, channel)

        await cog.check_and_post()

        channel.send.assert_awaited_once()
        kwargs = channel.send.await_args.kwargs
        assert kwargs["view"] is cog.view
        assert kwargs["file"].filename == "standings.png"
        assert "Last updated:" in kwargs["content"]

        config = cog.config
        assert config.message_id == 222
        assert config.last_hash == data_hash(_standings())
        assert config.last_updated == config.last_checked
        assert cog.latest == _standings()
        assert (tmp_path / "config.json").is_file()

    @pytest.mark.asyncio
    async def test_unchanged_only_edits_timestamps(self, tmp_path):
        existing = _message()
        channel = _channel(existing)
        cog = _cog(tmp_path, channel)
        cog.config.update_state(message_id=111, last_hash=data_hash(_standings()), last_updated="<t:1:F>")

        await cog.check_and_post()

        channel.send.assert_not_awaited()
        cog.render_main.assert_not_awaited()
        existing.edit.assert_awaited_once()
        content = existing.edit.await_args.kwargs["content"]
        assert "Last updated: **<t:1:F>**" in content
        assert cog.config.message_id == 111
        assert cog.config.last_updated == "<t:1:F>"
        assert cog.config.last_checked != "<t:1:F>"

    @pytest.mark.asyncio
    async def test_unchanged_but_message_gone_reposts(self, tmp_path):
        channel = _channel()
        cog = _cog(tmp_path, channel)
        cog.config.update_state(message_id=111, last_hash=data_hash(_standings()), last_updated="<t:1:F>")

        await cog.check_and_post()

        channel.send.assert_awaited_once()
        assert "Last updated: **<t:1:F>**" in channel.send.await_args.kwargs["content"]
        assert cog.config.message_id == 222
        assert cog.config.last_updated == "<t:1:F>"

    @pytest.mark.asyncio
    async def test_changed_posts_new_and_deletes_old(self, tmp_path):
        old = _message()
        channel = _channel(old)
        cog = _cog(tmp_path, channel, standings=_standings(nett="101"))
        cog.config.update_state(message_id=111, last_hash=data_hash(_standings()), last_updated="<t:1:F>")

        await cog.check_and_post()

        channel.send.assert_awaited_once()
        old.delete.assert_awaited_once()
        old.edit.assert_not_awaited()
        assert cog.config.message_id == 222
        assert cog.config.last_hash == data_hash(_standings(nett="101"))
        assert cog.config.last_updated != "<t:1:F>"

    @pytest.mark.asyncio
    async def test_failed_delete_does_not_lose_new_message(self, tmp_path):
        old = _message()
        old.delete = AsyncMock(side_effect=discord.Forbidden(MagicMock(status=403, reason="Forbidden"), "Missing Access"))
        channel = _channel(old)
        cog = _cog(tmp_path, channel, standings=_standings(nett="101"))
        cog.config.update_state(message_id=111, last_hash="old")

        await cog.check_and_post()

        assert cog.config.message_id == 222

    @pytest.mark.asyncio
    async def test_scrape_failure_keeps_existing_message(self, tmp_path):
        channel = _channel(_message())
        cog = _cog(tmp_path, channel)
        cog.scrape_all = AsyncMock(side_effect=StandingsParseError("Club 50: parsed 0 rows"))
        cog.config.update_state(message_id=111, last_hash="abc", last_updated="<t:1:F>")

        await cog.check_and_post()

        channel.send.assert_not_awaited()
        assert cog.config.message_id == 111
        assert cog.config.last_hash == "abc"
        assert cog.config.last_updated == "<t:1:F>"
        assert cog.config.last_checked
        assert cog.latest == {}

    @pytest.mark.asyncio
    async def test_unwritable_config_does_not_escape_the_loop(self, tmp_path):
        cog = _cog(tmp_path, _channel(_message()))
        cog.scrape_all = AsyncMock(side_effect=StandingsParseError("Club 50: parsed 0 rows"))
        cog.config.save = MagicMock(side_effect=OSError("No space left on device"))

        await cog.check_and_post()

        cog.config.save.assert_called_once()
        assert cog.config.last_checked


class TestRefreshCommand:
    @pytest.mark.asyncio
    async def test_refresh_edits_message_in_place(self, tmp_path):
        existing = _message()
        channel = _channel(existing)
        cog = _cog(tmp_path, channel)
        cog.config.update_state(message_id=111)
        interaction = _interaction()

        await cog.refresh.callback(cog, interaction)

        interaction.response.defer.assert_awaited_once_with(ephemeral=True, thinking=True)
        existing.edit.assert_awaited_once()
        assert [a.filename for a in existing.edit.await_args.kwargs["attachments"]] == ["standings.png"]
        channel.send.assert_not_awaited()
        assert cog.config.message_id == 111
        assert cog.config.last_hash == data_hash(_standings())
        assert _replies(interaction) == ["✅ Refreshed and updated the standings message."]

    @pytest.mark.asyncio
    async def test_refresh_posts_when_message_missing(self, tmp_path):
        channel = _channel()
        cog = _cog(tmp_path, channel)
        cog.config.update_state(message_id=111)

        await cog.refresh.callback(cog, _interaction())

        channel.send.assert_awaited_once()
        assert cog.config.message_id == 222

    @pytest.mark.asyncio
    async def test_refresh_cooldown(self, tmp_path):
        cog = _cog(tmp_path, _channel())
        cog.last_refresh_at = time.monotonic()
        interaction = _interaction()

        await cog.refresh.callback(cog, interaction)

        cog.scrape_all.assert_not_awaited()
        assert _replies(interaction)[0].startswith("Please wait ")
        assert _replies(interaction)[0].endswith("s before refreshing again.")

    @pytest.mark.asyncio
    async def test_refresh_rejected_while_check_running(self, tmp_path):
        cog = _cog(tmp_path, _channel())
        interaction = _interaction()

        async with cog.post_lock:
            await cog.refresh.callback(cog, interaction)

        cog.scrape_all.assert_not_awaited()
        assert _replies(interaction) == ["A refresh is already running, try again in a moment."]
        assert cog.last_refresh_at is None

    @pytest.mark.asyncio
    async def test_refresh_failure_is_reported(self, tmp_path):
        cog = _cog(tmp_path, _channel())
        cog.scrape_all = AsyncMock(side_effect=StandingsParseError("Club 50: parsed 0 rows"))
        interaction = _interaction()

        await cog.refresh.callback(cog, interaction)

        assert _replies(interaction) == ["❌ Refresh failed: Club 50: parsed 0 rows"]


class TestClassButton:
    @pytest.mark.asyncio
    async def test_no_cached_standings(self, tmp_path):
        cog = _cog(tmp_path, _channel())
        interaction = _interaction()

        await cog.handle_class_button(interaction, "yellow")

        interaction.channel.send.assert_not_awaited()
        assert _replies(interaction) == ["Failed: No cached standings yet — wait for the next scrape."]

    @pytest.mark.asyncio
    async def test_posts_self_deleting_class_grid(self, tmp_path):
        cog = _cog(tmp_path, _channel())
        cog.latest = _standings()
        cog.render_classes = AsyncMock(return_value=("Split Yellow", b"png"))
        interaction = _interaction()

        await cog.handle_class_button(interaction, "yellow")

        cog.render_classes.assert_awaited_once_with("yellow")
        kwargs = interaction.channel.send.await_args.kwargs
        assert kwargs["delete_after"] == 300
        assert kwargs["file"].filename == "class-yellow.png"
        assert kwargs["content"] == (
            "**Split Yellow by Class** (auto-generated)\n"
            "This message will self-delete in **5 minutes**."
        )
        assert _replies(interaction) == ["Posted the class standings render (will self-delete in 5 minutes)."]

    @pytest.mark.asyncio
    async def test_per_user_cooldown(self, tmp_path):
        cog = _cog(tmp_path, _channel())
        cog.render_classes = AsyncMock(return_value=("Split Yellow", b"png"))

        first, second, other_user = _interaction(5), _interaction(5), _interaction(6)
        await cog.handle_class_button(first, "yellow")
        await cog.handle_class_button(second, "yellow")
        await cog.handle_class_button(other_user, "yellow")

        second.channel.send.assert_not_awaited()
        assert _replies(second) == ["Please wait 15s before using that button again."]
        other_user.channel.send.assert_awaited_once()
        assert cog.render_classes.await_count == 2

    @pytest.mark.asyncio
    async def test_real_render_uses_cached_scrape(self, tmp_path):
        cog = _cog(tmp_path, _channel(), watermark_url="", fallback_flag_url="")
        cog.latest = _standings()

        name, png = await cog.render_classes("yellow")

        assert name == "Split Yellow"
        assert png.startswith(b"\x89PNG")
        await cog.session.close()

    @pytest.mark.asyncio
    async def test_expired_cooldowns_are_dropped(self, tmp_path):
        cog = _cog(tmp_path, _channel())
        cog.button_cooldowns = {1: 100.0, 2: 110.0, 3: 190.0}

        assert cog.button_wait(3, 200.0) == 5.0
        assert cog.button_cooldowns == {3: 190.0}
        assert cog.button_wait(1, 200.0) == 0.0
