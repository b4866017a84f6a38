"""
Offline rendering tests: images are either absent or pre-seeded in the cache,
so nothing is downloaded.
"""

import io

import pytest
from PIL import Image, ImageDraw

from render import (
    GRID_W,
    PANEL_MIN_H,
    Column,
    ImageCache,
    build_scaled_columns,
    class_badge_style,
    columns_for,
    fit_text,
    hex_to_rgb,
    load_font,
    logo_target_color,
    panel_height_for_rows,
    render_class_grid_png,
    render_standings_png,
    split_drivers_suffix,
    split_title_leading_class,
    standings_image,
)
from standings import Standings, StandingsRow

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def _rows(n, with_class=False):
    classes = ("Pro", "Silver", "Pro-Am", "Am")
    return [
        StandingsRow(
            pos=str(i + 1),
            driver=f"Driver {i + 1}",
            car_no=str(10 + i),
            class_name=classes[i % 4] if with_class else "",
            race_pts="10", quali_pts="2", fl_pts="1",
            total=str(100 - i), nett=str(100 - i), diff=str(-i),
        )
        for i in range(n)
    ]


def _panel(title, n, with_class=False):
    return Standings(title=f"{title} — Season 3 ({n} drivers)", subtitle="Auto-updates", rows=_rows(n, with_class))


def _decode(png):
    assert png.startswith(PNG_SIGNATURE)
    return Image.open(io.BytesIO(png))


class TestColumns:
    def test_class_column_only_when_present(self):
        assert "class_name" not in [c.key for c in columns_for(_rows(3))]
        assert "class_name" in [c.key for c in columns_for(_rows(3, with_class=True))]

    @pytest.mark.parametrize("table_w", [508, 470, 333])
    def test_scaled_widths_fill_table_exactly(self, table_w):
        cols = build_scaled_columns(columns_for(_rows(3, with_class=True)), table_w)
        assert sum(c.width for c in cols) == table_w

    def test_no_upscaling_of_narrow_columns(self):
        cols = build_scaled_columns([Column("a", "A", 40), Column("b", "B", 60)], 100)
        assert [c.width for c in cols] == [40, 60]


class TestTitles:
    def test_split_drivers_suffix(self):
        assert split_drivers_suffix("Club 50 — Season 24 (42 drivers)") == ("Club 50 — Season 24", "(42 drivers)")
        assert split_drivers_suffix("No suffix") == ("No suffix", "")

    def test_leading_class(self):
        assert split_title_leading_class("Pro-Am — Split Red — Season 3 (2 drivers)") == (
            "Pro-Am", "Split Red — Season 3 (2 drivers)"
        )
        assert split_title_leading_class("Club 50 Standings") is None

    def test_badge_styles(self):
        assert class_badge_style("Am") == ("#ff0000", "#ffffff")
        assert class_badge_style("GT4") is None


class TestHelpers:
    def test_hex_to_rgb(self):
        assert hex_to_rgb("#2b6cff") == (0x2B, 0x6C, 0xFF)
        assert hex_to_rgb("") is None

    def test_fit_text_adds_ellipsis(self):
        draw = ImageDraw.Draw(Image.new("RGB", (10, 10)))
        font = load_font(13)
        long_name = "Someone With A Really Long Racing Name"
        fitted = fit_text(draw, long_name, font, 60)
        assert fitted.endswith("…")
        assert draw.textlength(fitted, font=font) <= 60
        assert fit_text(draw, "Al", font, 60) == "Al"

    def test_logo_target_color(self):
        assert logo_target_color("https://cdn.example.com/cars/mclaren-720s.png") == (255, 106, 0)
        assert logo_target_color("https://cdn.example.com/icons/17.png", "mclaren") == (255, 106, 0)
        assert logo_target_color("https://cdn.example.com/icons/3.png", "bmw") == (255, 255, 255)
        assert logo_target_color("https://cdn.example.com/icons/9.png", "ferrari") is None
        assert logo_target_color("https://cdn.example.com/icons/9.png") is None


class TestLayout:
    def test_panel_height_grows_with_rows(self):
        assert panel_height_for_rows([]) == PANEL_MIN_H
        assert panel_height_for_rows(_rows(40)) > PANEL_MIN_H

    def test_three_panels_make_the_wide_banner(self):
        image = standings_image(
            [_panel("Club 50", 3), _panel("Split Yellow", 12, True), _panel("Split Red", 5, True)],
            ["#2b6cff", "#f6c343", "#ff3b3b"],
        )
        assert image.size == (1720, panel_height_for_rows(_rows(12)))

    def test_no_panels(self):
        with pytest.raises(ValueError):
            standings_image([])


@pytest.mark.asyncio
async def test_render_standings_png():
    panels = [_panel("Club 50", 3), _panel("Split Yellow", 4, True), _panel("Split Red", 2, True)]
    png = await render_standings_png(panels, ["#2b6cff", "#f6c343", "#ff3b3b"], cache=ImageCache())
    image = _decode(png)
    assert image.size[0] == 1720
    assert image.size[1] >= PANEL_MIN_H


@pytest.mark.asyncio
async def test_render_single_panel():
    png = await render_standings_png([_panel("Endurance", 6)], cache=ImageCache())
    assert _decode(png).size[0] == 22 * 2 + 544


@pytest.mark.asyncio
async def test_render_class_grid_png_with_empty_class():
    panels = [
        _panel("Pro — Split Yellow", 3, True),
        _panel("Silver — Split Yellow", 2, True),
        Standings(title="Pro-Am — Split Yellow — Season 3 (0 drivers)"),
        _panel("Am — Split Yellow", 1, True),
    ]
    png = await render_class_grid_png(panels, cache=ImageCache())
    assert _decode(png).size[0] == GRID_W


def _seeded_cache():
    cache = ImageCache()
    cache.put("https://cdn.example.com/logos/mclaren.png", Image.new("RGBA", (40, 40), (20, 20, 20, 255)))
    cache.put("https://cdn.example.com/icons/17.png", Image.new("RGBA", (64, 32), (10, 10, 10, 255)))
    cache.put("https://cdn.example.com/flags/gb.png", Image.new("RGBA", (30, 20), (0, 36, 125, 255)))
    cache.put("https://cdn.example.com/watermark.png", Image.new("RGBA", (200, 200), (255, 255, 255, 180)))
    cache.put("https://cdn.example.com/flags/un.png", Image.new("RGBA", (30, 20), (91, 146, 229, 255)))
    cache.put("https://cdn.example.com/broken.png", None)
    return cache


def _rows_with_images():
    rows = _rows(4, with_class=True)
    rows[0].car_img = "https://cdn.example.com/logos/mclaren.png"
    rows[0].country_img = "https://cdn.example.com/flags/gb.png"
    rows[1].car_img = "https://cdn.example.com/icons/17.png"
    rows[1].car_make_key = "mclaren"
    rows[2].car_img = "https://cdn.example.com/broken.png"
    rows[2].country_img = "https://cdn.example.com/broken.png"
    return rows


@pytest.mark.asyncio
async def test_render_with_icons_watermark_and_failed_downloads():
    rows = _rows_with_images()
    panels = [Standings(title=f"{name} — Season 3 (4 drivers)", rows=rows) for name in ("Club 50", "Split Yellow", "Split Red")]

    png = await render_standings_png(
        panels,
        ["#2b6cff", "#f6c343", "#ff3b3b"],
        watermark_url="https://cdn.example.com/watermark.png",
        fallback_flag_url="https://cdn.example.com/flags/un.png",
        cache=_seeded_cache(),
    )
    assert _decode(png).size[0] == 1720


@pytest.mark.asyncio
async def test_class_grid_with_icons_and_missing_watermark():
    rows = _rows_with_images()
    panels = [Standings(title=f"{c} — Split Yellow — Season 3 (1 drivers)", rows=[row]) for c, row in zip(("Pro", "Silver", "Pro-Am", "Am"), rows)]

    png = await render_class_grid_png(
        panels,
        watermark_url="https://cdn.example.com/broken.png",
        fallback_flag_url="https://cdn.example.com/flags/un.png",
        cache=_seeded_cache(),
    )
    assert _decode(png).size[0] == GRID_W
