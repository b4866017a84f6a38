"""
Leaderboard image rendering with Pillow.

Layout is fixed: a dark gradient canvas, an optional faded watermark, and one
rounded card per league holding a title, a subtitle and the standings table.
Everything is drawn onto an RGB canvas with RGBA colours blended in, and each
card is pasted back through a rounded mask so its contents stay clipped.

Remote images (car logos, flags, watermark) are fetched up front through an
:class:`ImageCache`; the drawing itself is synchronous and runs in a worker
thread.
"""
from __future__ import annotations

import asyncio
import functools
import io
import math
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, Optional

import aiohttp
import numpy as np
from PIL import Image, ImageDraw, ImageFont, ImageOps

from logger_config import logger
from standings import Standings, StandingsRow, norm

# ---- Global styling ----
BG_GRAD_TOP = (11, 18, 32, 255)
BG_GRAD_BOT = (5, 10, 18, 255)

TINT_PRO = "#f2f4f8"
TINT_SILVER = "#8fa1b8"
TINT_PROAM = "#1f2a36"
TINT_AM = "#ff3b3b"
CLASS_TINTS = (TINT_PRO, TINT_SILVER, TINT_PROAM, TINT_AM)

TINT_ALPHA = 0.08
TINT_EDGE_ALPHA = 0.14
# Dark tints need a heavier wash to be visible at all
TINT_BOOST = {TINT_PROAM: 1.65, TINT_SILVER: 1.35}


def rgba(r: int, g: int, b: int, a: float = 1.0) -> tuple[int, int, int, int]:
    return (r, g, b, round(a * 255))


CARD_BG_TOP = rgba(18, 27, 43, 0.55)
CARD_BG_BOT = rgba(11, 18, 32, 0.45)
CARD_STROKE = rgba(255, 255, 255, 0.06)

HEADER_STRIP = rgba(255, 255, 255, 0.020)
ROW_ODD = rgba(255, 255, 255, 0.015)
ROW_EVEN = rgba(255, 255, 255, 0.007)
GRID = rgba(255, 255, 255, 0.055)

TEXT = rgba(255, 255, 255, 0.92)
MUTED = rgba(255, 255, 255, 0.62)
HEADER = rgba(255, 255, 255, 0.74)

# ---- Layout ----
OUTER_PAD = 22
GAP = 22
PAD_INNER = 18
HEADER_H = 58
HEAD_ROW_H = 26
ROW_H = 26
CARD_RADIUS = 18

PANEL_W = 544  # three panels -> the classic 1720px banner
PANEL_MIN_H = 420
GRID_W = 1200
GRID_CELL_MIN_H = 360

FLAG_ICON = 14
CAR_ICON = 16

WATERMARK_WIDTH_PCT = 0.75
WATERMARK_HEIGHT_PCT = 0.6
WATERMARK_OPACITY = 0.18
WATERMARK_Y_OFFSET = 0

FONT_DIR = Path(__file__).resolve().parent / "fonts"
FONT_CANDIDATES = {
    "bold": (FONT_DIR / "BaiJamjuree-Bold.ttf", "DejaVuSans-Bold.ttf", "arialbd.ttf"),
    "medium": (FONT_DIR / "BaiJamjuree-Medium.ttf", "DejaVuSans.ttf", "arial.ttf"),
}

CLASS_BADGES = {
    "pro": ("#ffffff", "#000000"),
    "silver": ("#c0c0c0", "#000000"),
    "pro-am": ("#000000", "#ffffff"),
    "proam": ("#000000", "#ffffff"),
    "am": ("#ff0000", "#ffffff"),
}

# Logos that vanish on a dark card get recoloured
LOGO_COLORS = (
    ("mclaren", (255, 106, 0)),
    ("mercedes", (255, 255, 255)),
    ("bmw", (255, 255, 255)),
    ("honda", (255, 255, 255)),
)

_TITLE_CLASS_RE = re.compile(r"^\s*(Pro-Am|Pro|Silver|Am)\s*[—-]\s*(.+)$", re.IGNORECASE)
_DRIVERS_SUFFIX_RE = re.compile(r"^(.*?)(\s*\(\d+\s+drivers\))\s*$", re.IGNORECASE)


# ---------- fonts ----------

@functools.lru_cache(maxsize=None)
def load_font(size: int, weight: str = "medium") -> ImageFont.FreeTypeFont:
    for candidate in FONT_CANDIDATES.get(weight, FONT_CANDIDATES["medium"]):
        try:
            return ImageFont.truetype(str(candidate), size=size)
        except OSError:
            continue
    logger.debug(f"No TrueType font for weight={weight}, using Pillow default")
    return ImageFont.load_default(size=size)


# ---------- image cache ----------

class ImageCache:
    """url -> decoded RGBA image, or None when the download failed."""

    def __init__(self) -> None:
        self._images: dict[str, Optional[Image.Image]] = {}

    def __contains__(self, url: str) -> bool:
        return url in self._images

    def get(self, url: str) -> Optional[Image.Image]:
        if not url:
            return None
        return self._images.get(url)

    def put(self, url: str, image: Optional[Image.Image]) -> None:
        self._images[url] = image

    async def fetch(self, session: aiohttp.ClientSession, url: str) -> Optional[Image.Image]:
        if not url:
            return None
        if url in self._images:
            return self._images[url]
        image = None
        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=20)) as resp:
                if resp.status != 200:
                    raise ValueError(f"HTTP {resp.status}")
                body = await resp.read()
            image = Image.open(io.BytesIO(body))
            image.load()
            image = image.convert("RGBA")
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            logger.debug(f"Image load failed for {url}: {e!r}")
            image = None
        self._images[url] = image
        return image

    async def prefetch(self, urls: Iterable[str], session: aiohttp.ClientSession | None = None) -> None:
        pending = sorted({u for u in urls if u and u not in self._images})
        if not pending:
            return
        if session is None:
            async with aiohttp.ClientSession() as own_session:
                await self._fetch_all(own_session, pending)
        else:
            await self._fetch_all(session, pending)

    async def _fetch_all(self, session: aiohttp.ClientSession, urls: list[str]) -> None:
        limit = asyncio.Semaphore(8)

        async def one(url: str) -> None:
            async with limit:
                await self.fetch(session, url)

        await asyncio.gather(*(one(u) for u in urls))


image_cache = ImageCache()


# ---------- colour / geometry helpers ----------

def hex_to_rgb(value: str) -> Optional[tuple[int, int, int]]:
    h = str(value or "").replace("#", "").strip()
    if len(h) != 6:
        return None
    try:
        n = int(h, 16)
    except ValueError:
        return None
    return (n >> 16) & 255, (n >> 8) & 255, n & 255


def vertical_gradient(size: tuple[int, int], top, bottom) -> Image.Image:
    w, h = size
    mask = Image.linear_gradient("L").resize((w, h))
    return Image.composite(Image.new("RGBA", size, bottom), Image.new("RGBA", size, top), mask)


def rounded_mask(size: tuple[int, int], radius: int) -> Image.Image:
    w, h = size
    mask = Image.new("L", size, 0)
    ImageDraw.Draw(mask).rounded_rectangle((0, 0, w - 1, h - 1), radius=min(radius, w // 2, h // 2), fill=255)
    return mask


def fit_icon(image: Image.Image, box: int) -> Image.Image:
    return ImageOps.contain(image, (box, box), method=Image.Resampling.LANCZOS)


def logo_target_color(url: str, make_key: str = "") -> Optional[tuple[int, int, int]]:
    """Recolour target for dark logos, matched on the image URL or the car make."""
    u = str(url or "").lower()
    make = str(make_key or "").lower()
    for needle, color in LOGO_COLORS:
        if needle in u or needle == make:
            return color
    return None


def colorize_logo(image: Image.Image, rgb: tuple[int, int, int]) -> Image.Image:
    """Flat-colour a logo, keeping dark strokes more opaque than light fill."""
    arr = np.asarray(image.convert("RGBA"), dtype=np.float32)
    lum = (0.2126 * arr[..., 0] + 0.7152 * arr[..., 1] + 0.0722 * arr[..., 2]) / 255.0
    mask = np.clip(1.0 - lum, 0.0, 1.0)
    alpha = np.minimum(1.0, (arr[..., 3] / 255.0) * (0.35 + 0.85 * mask))

    out = np.empty(arr.shape, dtype=np.uint8)
    out[..., 0], out[..., 1], out[..., 2] = rgb
    out[..., 3] = np.round(alpha * 255).astype(np.uint8)
    return Image.fromarray(out)


def fit_text(draw: ImageDraw.ImageDraw, text: str, font, max_w: float) -> str:
    if max_w <= 0 or draw.textlength(text, font=font) <= max_w:
        return text
    ellipsis = "…"
    while text and draw.textlength(text + ellipsis, font=font) > max_w:
        text = text[:-1]
    return text.rstrip() + ellipsis if text else ""


# ---------- columns ----------

@dataclass
class Column:
    key: str
    label: str
    width: int
    align: str = "right"
    icon: bool = False


def has_any_class(rows: list[StandingsRow]) -> bool:
    return any(norm(r.class_name) for r in rows)


def columns_for(rows: list[StandingsRow]) -> list[Column]:
    cols = [
        Column("pos", "#", 34),
        Column("driver", "Driver", 240, "left"),
        Column("car_no", "Car#", 46),
    ]
    if has_any_class(rows):
        cols.append(Column("class_name", "Class", 64, "left"))
    cols += [
        Column("car_img", "Car", 44, "center", icon=True),
        Column("race_pts", "Race", 48),
        Column("quali_pts", "Qu", 48),
        Column("fl_pts", "FL", 34),
        Column("total", "Total", 44),
        Column("nett", "Nett", 44),
        Column("diff", "Diff", 44),
    ]
    return cols


def build_scaled_columns(cols: list[Column], table_w: int) -> list[Column]:
    """
    Shrink base widths to fit *table_w*. Widths are floored and the leftover
    pixels go to the columns with the largest fractional parts, one each, so
    the grid lines never drift.
    """
    base_w = sum(c.width for c in cols)
    scale = min(1.0, table_w / base_w) if base_w else 1.0

    exact = [c.width * scale for c in cols]
    widths = [math.floor(w) for w in exact]
    remain = table_w - sum(widths)

    order = sorted(range(len(cols)), key=lambda i: exact[i] - math.floor(exact[i]), reverse=True)
    for i in order:
        if remain <= 0:
            break
        widths[i] += 1
        remain -= 1

    return [replace(c, width=w) for c, w in zip(cols, widths)]


def _text_anchor_x(col: Column, x: int) -> tuple[float, str]:
    if col.align == "left":
        return x + 8, "lm"
    if col.align == "center":
        return x + col.width / 2, "mm"
    return x + col.width - 8, "rm"


# ---------- titles ----------

def split_drivers_suffix(title: str) -> tuple[str, str]:
    """'... Season 24 (42 drivers)' -> ('... Season 24', '(42 drivers)')"""
    t = str(title or "")
    m = _DRIVERS_SUFFIX_RE.match(t)
    if not m:
        return t, ""
    return m.group(1).strip(), m.group(2).strip()


def split_title_leading_class(title: str) -> Optional[tuple[str, str]]:
    m = _TITLE_CLASS_RE.match(str(title or ""))
    if not m:
        return None
    return m.group(1), m.group(2)


def class_badge_style(class_name: str) -> Optional[tuple[str, str]]:
    return CLASS_BADGES.get(str(class_name or "").strip().lower())


def draw_pill(draw: ImageDraw.ImageDraw, x: int, baseline: int, text: str, style: tuple[str, str]) -> int:
    font = load_font(17, "bold")
    pad_x, height, radius = 12, 26, 12
    width = math.ceil(draw.textlength(text, font=font)) + pad_x * 2
    top = round(baseline - 20)

    bg, fg = style
    draw.rounded_rectangle((x, top, x + width, top + height), radius=radius, fill=bg)
    draw.text((x + pad_x, baseline), text, font=font, fill=fg, anchor="ls")
    return width


def _draw_heading(draw: ImageDraw.ImageDraw, title: str, subtitle: str) -> None:
    x = PAD_INNER
    y_title = 25
    title_font = load_font(19, "bold")
    small_font = load_font(13, "bold")

    split = split_title_leading_class(title)
    if split:
        class_label, rest = split
        style = class_badge_style(class_label)
        badge_w = draw_pill(draw, x, y_title, class_label, style) if style else 0
        x += badge_w + 10
        base, drivers = split_drivers_suffix(rest)
        drivers_y = y_title + 18
    else:
        base, drivers = split_drivers_suffix(title)
        drivers_y = 43

    draw.text((x, y_title), base, font=title_font, fill=TEXT, anchor="ls")
    if drivers:
        draw.text((x, drivers_y), drivers, font=small_font, fill=MUTED, anchor="ls")

    draw.text((PAD_INNER, 64), subtitle or "", font=load_font(13), fill=MUTED, anchor="ls")


# ---------- panel ----------

def _paste_icon(region: Image.Image, icon: Image.Image, box_x: float, box_y: float, box: int) -> None:
    ix = round(box_x + (box - icon.width) / 2)
    iy = round(box_y + (box - icon.height) / 2)
    region.paste(icon, (ix, iy), icon)


def _apply_tint(region: Image.Image, tint: str) -> None:
    rgb = hex_to_rgb(tint)
    if not rgb:
        return
    boost = TINT_BOOST.get(tint.lower(), 1.0)
    edge_a, base_a = TINT_EDGE_ALPHA * boost, TINT_ALPHA * boost

    w, h = region.size
    cx, cy = w * 0.22, h * 0.18
    r0, r1 = 10.0, float(max(w, h))
    yy, xx = np.mgrid[0:h, 0:w]
    t = np.clip((np.hypot(xx - cx, yy - cy) - r0) / (r1 - r0), 0.0, 1.0)
    alpha = np.interp(t, [0.0, 0.55, 1.0], [edge_a, base_a, 0.0])

    mask = Image.fromarray(np.round(alpha * 255).astype(np.uint8))
    region.paste(Image.new("RGB", region.size, rgb), (0, 0), mask)


def draw_panel(
    canvas: Image.Image,
    box: tuple[int, int, int, int],
    standings: Standings,
    *,
    tint: str = "",
    images: ImageCache | None = None,
    fallback_flag: Optional[Image.Image] = None,
) -> None:
    x, y, w, h = box
    images = images or ImageCache()
    rows = standings.rows

    region = canvas.crop((x, y, x + w, y + h))
    card = vertical_gradient((w, h), CARD_BG_TOP, CARD_BG_BOT)
    region.paste(card, (0, 0), card)
    if tint:
        _apply_tint(region, tint)

    draw = ImageDraw.Draw(region, "RGBA")
    draw.rounded_rectangle((0, 0, w - 1, h - 1), radius=CARD_RADIUS, outline=CARD_STROKE, width=1)
    _draw_heading(draw, standings.title, standings.subtitle)

    table_x = PAD_INNER
    table_y = HEADER_H + 8
    table_w = w - PAD_INNER * 2
    cols = build_scaled_columns(columns_for(rows), table_w)

    draw.rectangle((table_x, table_y, table_x + table_w - 1, table_y + HEAD_ROW_H - 1), fill=HEADER_STRIP)
    header_font = load_font(13, "bold")
    cx = table_x
    for col in cols:
        tx, anchor = _text_anchor_x(col, cx)
        draw.text((tx, table_y + HEAD_ROW_H / 2), col.label, font=header_font, fill=HEADER, anchor=anchor)
        cx += col.width

    grid_h = HEAD_ROW_H + ROW_H * len(rows)
    cx = table_x
    for col in cols[:-1]:
        cx += col.width
        draw.line((cx, table_y, cx, table_y + grid_h), fill=GRID, width=1)

    row_font = load_font(13)
    for i, row in enumerate(rows):
        ry = table_y + HEAD_ROW_H + i * ROW_H
        mid_y = ry + ROW_H / 2
        draw.rectangle((table_x, ry, table_x + table_w - 1, ry + ROW_H - 1), fill=ROW_EVEN if i % 2 == 0 else ROW_ODD)

        cell_x = table_x
        for col in cols:
            if col.key == "driver":
                flag = images.get(norm(row.country_img)) or fallback_flag
                ix = cell_x + 8
                if flag is not None:
                    _paste_icon(region, fit_icon(flag, FLAG_ICON), ix, ry + (ROW_H - FLAG_ICON) / 2, FLAG_ICON)
                name_x = ix + FLAG_ICON + 6
                name = fit_text(draw, norm(row.driver), row_font, cell_x + col.width - 4 - name_x)
                draw.text((name_x, mid_y), name, font=row_font, fill=TEXT, anchor="lm")
            elif col.icon:
                url = norm(row.car_img)
                logo = images.get(url)
                if logo is not None:
                    icon = fit_icon(logo, CAR_ICON)
                    target = logo_target_color(url, row.car_make_key)
                    if target:
                        icon = colorize_logo(icon, target)
                    _paste_icon(region, icon, cell_x + (col.width - CAR_ICON) / 2, ry + (ROW_H - CAR_ICON) / 2, CAR_ICON)
            else:
                tx, anchor = _text_anchor_x(col, cell_x)
                value = fit_text(draw, norm(getattr(row, col.key, "")), row_font, col.width - 4)
                draw.text((tx, mid_y), value, font=row_font, fill=TEXT, anchor=anchor)
            cell_x += col.width

    canvas.paste(region, (x, y), rounded_mask((w, h), CARD_RADIUS))


# ---------- canvas ----------

def panel_height_for_rows(rows: list[StandingsRow]) -> int:
    inner_table_h = HEAD_ROW_H + ROW_H * len(rows or [])
    total = OUTER_PAD * 2 + HEADER_H + 8 + inner_table_h + 18
    return max(PANEL_MIN_H, total)


def grid_cell_height_for_rows(rows: list[StandingsRow]) -> int:
    return max(GRID_CELL_MIN_H, HEADER_H + 8 + HEAD_ROW_H + ROW_H * len(rows or []) + 28)


def new_canvas(width: int, height: int) -> Image.Image:
    return vertical_gradient((width, height), BG_GRAD_TOP, BG_GRAD_BOT).convert("RGB")


def draw_watermark(canvas: Image.Image, watermark: Optional[Image.Image]) -> None:
    if watermark is None:
        return
    W, H = canvas.size
    target_w = int(W * WATERMARK_WIDTH_PCT)
    target_h = int(H * WATERMARK_HEIGHT_PCT)
    fitted = ImageOps.contain(watermark.convert("RGBA"), (target_w, target_h), method=Image.Resampling.LANCZOS)

    x = (W - target_w) // 2 + (target_w - fitted.width) // 2
    y = (H - target_h) // 2 + (target_h - fitted.height) // 2 + WATERMARK_Y_OFFSET
    alpha = fitted.getchannel("A").point(lambda a: round(a * WATERMARK_OPACITY))
    canvas.paste(fitted, (x, y), alpha)


def standings_image(
    panels: list[Standings],
    tints: list[str] | None = None,
    *,
    images: ImageCache | None = None,
    watermark: Optional[Image.Image] = None,
    fallback_flag: Optional[Image.Image] = None,
) -> Image.Image:
    """Side-by-side league panels, tall enough to show every driver."""
    if not panels:
        raise ValueError("standings_image needs at least one panel")
    tints = list(tints or [])
    n = len(panels)
    W = OUTER_PAD * 2 + PANEL_W * n + GAP * (n - 1)
    H = max(panel_height_for_rows(p.rows) for p in panels)

    canvas = new_canvas(W, H)
    draw_watermark(canvas, watermark)

    panel_h = H - OUTER_PAD * 2
    for i, panel in enumerate(panels):
        draw_panel(
            canvas,
            (OUTER_PAD + (PANEL_W + GAP) * i, OUTER_PAD, PANEL_W, panel_h),
            panel,
            tint=tints[i] if i < len(tints) else "",
            images=images,
            fallback_flag=fallback_flag,
        )
    return canvas


def class_grid_image(
    panels: list[Standings],
    *,
    images: ImageCache | None = None,
    watermark: Optional[Image.Image] = None,
    fallback_flag: Optional[Image.Image] = None,
) -> Image.Image:
    """2x2 grid: Pro | Silver over Pro-Am | Am."""
    cells = [panels[i] if i < len(panels) and panels[i] is not None else Standings(title="—") for i in range(4)]
    heights = [grid_cell_height_for_rows(p.rows) for p in cells]
    top_h = max(heights[0], heights[1])
    bot_h = max(heights[2], heights[3])

    W = GRID_W
    H = OUTER_PAD * 2 + top_h + GAP + bot_h
    canvas = new_canvas(W, H)
    draw_watermark(canvas, watermark)

    cell_w = (W - OUTER_PAD * 2 - GAP) // 2
    origins = (
        (OUTER_PAD, OUTER_PAD),
        (OUTER_PAD + cell_w + GAP, OUTER_PAD),
        (OUTER_PAD, OUTER_PAD + top_h + GAP),
        (OUTER_PAD + cell_w + GAP, OUTER_PAD + top_h + GAP),
    )
    for (cx, cy), panel, h, tint in zip(origins, cells, heights, CLASS_TINTS):
        draw_panel(canvas, (cx, cy, cell_w, h), panel, tint=tint, images=images, fallback_flag=fallback_flag)
    return canvas


def to_png(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def _image_urls(panels: list[Standings]) -> set[str]:
    urls = set()
    for panel in panels:
        for row in panel.rows:
            urls.add(norm(row.car_img))
            urls.add(norm(row.country_img))
    urls.discard("")
    return urls


async def _prepare(panels, watermark_url, fallback_flag_url, session, cache):
    cache = cache if cache is not None else image_cache
    urls = _image_urls(panels) | {u for u in (watermark_url, fallback_flag_url) if u}
    await cache.prefetch(urls, session)
    return cache, cache.get(watermark_url or ""), cache.get(fallback_flag_url or "")


async def render_standings_png(
    panels: list[Standings],
    tints: list[str] | None = None,
    *,
    watermark_url: str | None = None,
    fallback_flag_url: str | None = None,
    session: aiohttp.ClientSession | None = None,
    cache: ImageCache | None = None,
) -> bytes:
    cache, watermark, flag = await _prepare(panels, watermark_url, fallback_flag_url, session, cache)

    def work() -> bytes:
        return to_png(standings_image(panels, tints, images=cache, watermark=watermark, fallback_flag=flag))

    return await asyncio.get_running_loop().run_in_executor(None, work)


async def render_class_grid_png(
    panels: list[Standings],
    *,
    watermark_url: str | None = None,
    fallback_flag_url: str | None = None,
    session: aiohttp.ClientSession | None = None,
    cache: ImageCache | None = None,
) -> bytes:
    cache, watermark, flag = await _prepare(panels, watermark_url, fallback_flag_url, session, cache)

    def work() -> bytes:
        return to_png(class_grid_image(panels, images=cache, watermark=watermark, fallback_flag=flag))

    return await asyncio.get_running_loop().run_in_executor(None, work)
