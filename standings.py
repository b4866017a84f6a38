"""
Standings scraping: DevExpress (ASP.NET) grids and SimGrid results pages.

Both sources are normalised into :class:`StandingsRow` so the renderer and
the change tracker never need to know where a table came from.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Optional
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup
from bs4.element import Tag

from logger_config import logger

SIMGRID_ORIGIN = "https://www.thesimgrid.com"
TWEMOJI_BASE = "https://cdnjs.cloudflare.com/ajax/libs/twemoji/14.0.2/72x72"

DATA_ROW_SELECTOR = "tr.dxgvDataRow_Moderno, tr.dxgvDataRow, tr[id*='DXDataRow']"
HEADER_CELL_SELECTOR = "td.dxgvHeader_Moderno, td.dxgvHeader"


class StandingsParseError(Exception):
    """The page was fetched but the standings table could not be read."""


@dataclass
class StandingsRow:
    pos: str = ""
    driver: str = ""
    car_no: str = ""
    class_name: str = ""
    car_img: str = ""
    country_img: str = ""
    race_pts: str = ""
    quali_pts: str = ""
    fl_pts: str = ""
    total: str = ""
    nett: str = ""
    diff: str = ""
    rating: str = ""
    car_make_key: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Standings:
    title: str
    subtitle: str = ""
    rows: list[StandingsRow] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "subtitle": self.subtitle,
            "rows": [r.to_dict() for r in self.rows],
        }


# ---------- text helpers ----------

def norm(text) -> str:
    """Collapse whitespace (nbsp included)."""
    if text is None:
        return ""
    return " ".join(str(text).split())


def _lower(text) -> str:
    return norm(text).lower()


def clean_devexpress_text(text) -> str:
    """DevExpress leaves script/comment junk in its utility columns; drop it."""
    s = norm(text)
    if not s:
        return ""
    if s.startswith("<!--") or "ASPx.AddDisabledItems" in s:
        return ""
    return s


def _direct_cells(tr: Tag) -> list[Tag]:
    return tr.find_all("td", recursive=False)


def _cell_text(td: Optional[Tag]) -> str:
    if td is None:
        return ""
    return clean_devexpress_text(td.get_text())


def _driver_text(td: Optional[Tag]) -> str:
    if td is None:
        return ""
    link = td.find("a")
    if link is not None:
        text = clean_devexpress_text(link.get_text())
        if text:
            return text
    for candidate in (td.get_text(), td.get("title"), td.get("aria-label")):
        text = clean_devexpress_text(candidate)
        if text:
            return text
    return ""


def _cell_image(td: Optional[Tag], base_url: str = "") -> str:
    if td is None:
        return ""
    img = td.find("img", src=True)
    if img is None:
        return ""
    src = str(img["src"]).strip()
    if src and base_url:
        src = urljoin(base_url, src)
    return src


# ---------- DevExpress grid ----------

def _header_caption(td: Tag) -> str:
    ellipsis = td.select_one(".dx-ellipsis")
    if ellipsis is not None:
        caption = norm(ellipsis.get_text())
        if caption:
            return caption
    return norm(td.get_text())


def find_header_row(table: Tag) -> Optional[Tag]:
    row = table.select_one("tr[id$='_DXHeadersRow0']")
    if row is not None:
        return row
    for tr in table.find_all("tr"):
        if len(tr.select(HEADER_CELL_SELECTOR)) < 3:
            continue
        if "driver" in _lower(tr.get_text()):
            return tr
    return None


def extract_headers(header_row: Tag) -> list[str]:
    return [_header_caption(td) for td in _direct_cells(header_row)]


def _score_headers(headers: list[str], data_row_count: int) -> float:
    hn = [h.lower() for h in headers]

    def has(pred) -> bool:
        return any(pred(h) for h in hn)

    score = 0.0
    score += 2 if has(lambda h: "car#" in h or "car #" in h) else 0
    score += 2 if has(lambda h: "class" in h) else 0
    score += 1 if has(lambda h: h == "car") else 0
    score += 1 if has(lambda h: "race" in h) else 0
    score += 1 if has(lambda h: "quali" in h or "qual" in h) else 0
    score += 1 if has(lambda h: "fastest" in h or h == "fl") else 0
    score += 2 if has(lambda h: "nett" in h or "net" in h) else 0
    score += 1 if has(lambda h: "total" in h) else 0
    score += 1 if has(lambda h: "diff" in h) else 0
    return score + min(data_row_count, 50) / 50


def pick_best_grid(soup: BeautifulSoup) -> Optional[Tag]:
    """Score every DevExpress grid on the page and return the standings one."""
    best, best_score = None, -1.0
    for table in soup.select("table[id$='_DXMainTable']"):
        data_rows = table.select(DATA_ROW_SELECTOR)
        if len(data_rows) < 2:
            continue
        header_row = find_header_row(table)
        if header_row is None:
            continue
        headers = extract_headers(header_row)
        if not any("driver" in h.lower() for h in headers):
            continue
        score = _score_headers(headers, len(data_rows))
        if score > best_score:
            best, best_score = table, score
    return best


EXACT_COLUMNS = {
    "pos": ("#", "pos", "position"),
    "driver": ("driver",),
    "car_no": ("car#", "car #", "carno", "car no"),
    "class_name": ("class",),
    "car_img": ("car",),
    "country_img": ("country", "cou..."),
    "race_pts": ("race points", "race"),
    "quali_pts": ("quali points", "quali"),
    "fl_pts": ("fastest lap points", "fastest lap", "fl"),
    "total": ("total",),
    "nett": ("nett points", "nett"),
    "diff": ("diff.", "diff"),
}

# Only tried when no header matches exactly
FUZZY_COLUMNS = {
    "driver": ("driver",),
    "car_no": ("car#", "car #"),
    "class_name": ("class",),
    "race_pts": ("race points",),
    "quali_pts": ("quali points", "qualifying"),
    "fl_pts": ("fastest lap",),
    "total": ("total",),
    "nett": ("nett", "net points"),
    "diff": ("diff",),
}


def map_columns(headers: list[str]) -> dict[str, int]:
    """Map semantic field name -> column index (-1 when absent)."""
    hn = [_lower(h) for h in headers]
    colmap = {}
    for key, names in EXACT_COLUMNS.items():
        idx = next((i for i, h in enumerate(hn) if h in names), -1)
        if idx < 0 and key in FUZZY_COLUMNS:
            idx = next(
                (i for i, h in enumerate(hn) if any(n in h for n in FUZZY_COLUMNS[key])),
                -1,
            )
        colmap[key] = idx
    return colmap


def align_headers(headers: list[str], cell_count: int) -> list[str]:
    aligned = list(headers[:cell_count])
    aligned.extend([""] * (cell_count - len(aligned)))
    return aligned


def _is_utility_cell(td: Tag) -> bool:
    text = _lower(td.get_text())
    if "aspx.adddisableditems" in text or "dxr.axd" in text:
        return True
    return td.find(["a", "img", "script"]) is not None


def trim_utility_column(headers: list[str], first_row_cells: list[Tag]) -> tuple[list[str], bool]:
    """Drop a trailing blank-header column holding DevExpress buttons/scripts."""
    if not headers or headers[-1].strip() or not first_row_cells:
        return headers, False
    if _is_utility_cell(first_row_cells[-1]):
        return headers[:-1], True
    return headers, False


def parse_devexpress_standings(
    html: str,
    *,
    table_id: str | None = None,
    base_url: str = "",
    label: str = "Standings",
) -> list[StandingsRow]:
    """Parse an ASP.NET DevExpress standings grid into rows."""
    soup = BeautifulSoup(html, "html.parser")

    table = soup.find("table", id=table_id) if table_id else None
    if table is None:
        table = pick_best_grid(soup)
    if table is None:
        raise StandingsParseError(f"{label}: could not locate the DevExpress standings table")

    header_row = find_header_row(table)
    if header_row is None:
        raise StandingsParseError(f"{label}: could not find the header row")

    data_rows = table.select(DATA_ROW_SELECTOR)
    first_cells = _direct_cells(data_rows[0]) if data_rows else []

    headers = extract_headers(header_row)
    if first_cells:
        headers = align_headers(headers, len(first_cells))
    headers, trim_last = trim_utility_column(headers, first_cells)

    colmap = map_columns(headers)
    logger.debug(f"{label}: {len(headers)} headers, trim_last={trim_last}")
    logger.debug(f"{label} headers: {headers}")
    logger.debug(f"{label} column map: {colmap}")

    if colmap["driver"] < 0:
        raise StandingsParseError(
            f"{label}: couldn't map Driver column. Headers: {' | '.join(headers)}"
        )

    rows = []
    for tr in data_rows:
        cells = _direct_cells(tr)
        if trim_last and cells:
            cells = cells[:-1]
        if not cells:
            continue

        def cell(key: str) -> Optional[Tag]:
            idx = colmap[key]
            return cells[idx] if 0 <= idx < len(cells) else None

        row = StandingsRow(
            pos=_cell_text(cell("pos")),
            driver=_driver_text(cell("driver")),
            car_no=_cell_text(cell("car_no")),
            class_name=_cell_text(cell("class_name")),
            car_img=_cell_image(cell("car_img"), base_url),
            country_img=_cell_image(cell("country_img"), base_url),
            race_pts=_cell_text(cell("race_pts")),
            quali_pts=_cell_text(cell("quali_pts")),
            fl_pts=_cell_text(cell("fl_pts")),
            total=_cell_text(cell("total")),
            nett=_cell_text(cell("nett")),
            diff=_cell_text(cell("diff")),
        )
        if not row.driver and not row.pos:
            continue
        rows.append(row)

    logger.debug(f"{label}: parsed {len(rows)} rows")
    if rows:
        logger.debug(f"{label} sample row: {rows[0]}")
    return rows


# ---------- SimGrid ----------

_FLAG_RE = re.compile(r"^([\U0001F1E6-\U0001F1FF]{2})\s+")
_RATING_RE = re.compile(r"\s(\d{1,3}(?:,\d{3})+)\s*$")

# Checked in order; first hit wins
MAKE_KEYS = (
    (("mclaren",), "mclaren"),
    (("toyota", "gazoo"), "toyota_gazoo"),
    (("ferrari",), "ferrari"),
    (("porsche",), "porsche"),
    (("bmw",), "bmw"),
    (("mercedes", "amg"), "mercedes"),
    (("cadillac",), "cadillac"),
    (("peugeot",), "peugeot"),
    (("alpine",), "alpine"),
    (("lamborghini",), "lamborghini"),
    (("aston",), "astonmartin"),
    (("lexus",), "lexus"),
    (("honda", "acura"), "honda"),
    (("chevrolet", "corvette"), "corvette"),
)


def make_key(text: str) -> str:
    """Manufacturer key from a car name, tooltip or image URL."""
    s = _lower(text)
    if not s:
        return ""
    for needles, key in MAKE_KEYS:
        if any(n in s for n in needles):
            return key
    return ""


def flag_emoji_to_twemoji(flag: str) -> str:
    if not flag:
        return ""
    code = "-".join(f"{ord(ch):x}" for ch in flag)
    return f"{TWEMOJI_BASE}/{code}.png"


def split_driver_text(raw: str) -> tuple[str, str, str]:
    """'🇬🇧 Jane Doe 2,202' -> ('Jane Doe', '🇬🇧', '2,202')"""
    text = norm(raw)
    flag = ""
    m = _FLAG_RE.match(text)
    if m:
        flag = m.group(1)
        text = text[m.end():].strip()

    rating = ""
    m = _RATING_RE.search(text)
    if m:
        rating = m.group(1)
        text = text[:m.start()].strip()
    return text, flag, rating


def parse_simgrid_standings(html: str, *, label: str = "SimGrid") -> list[StandingsRow]:
    soup = BeautifulSoup(html, "html.parser")
    table = soup.select_one("table.table-results")
    if table is None:
        raise StandingsParseError(f"{label}: standings table not found")

    rows = []
    for tr in table.select("tbody tr"):
        pos_tag = tr.select_one("td.result-position strong") or tr.find("td")
        pos = norm(pos_tag.get_text()) if pos_tag else ""

        name_tag = tr.select_one("a.entrant-name")
        driver, flag, rating = split_driver_text(name_tag.get_text() if name_tag else "")
        if not driver:
            continue

        number_tag = tr.select_one("span.badge-number-board .car-number")
        car_no = norm(number_tag.get_text()) if number_tag else ""

        car_cell = tr.select_one("td.nowrap")
        car_img_tag = car_cell.find("img") if car_cell is not None else None
        car_img = str(car_img_tag.get("src") or "").strip() if car_img_tag is not None else ""
        if car_img.startswith("/"):
            car_img = urljoin(SIMGRID_ORIGIN, car_img)

        hint = ""
        if car_img_tag is not None:
            hint = (
                norm(car_img_tag.get("alt"))
                or norm(car_img_tag.get("title"))
                or norm(car_img_tag.get("data-bs-original-title"))
            )
        if not hint and car_cell is not None:
            hint = norm(car_cell.get("title")) or norm(car_cell.get_text())

        points_cells = tr.select("td.fw-bold")
        pts = (norm(points_cells[-1].get_text()) if points_cells else "") or "0"

        rows.append(StandingsRow(
            pos=pos,
            driver=driver,
            rating=rating,
            car_no=car_no,
            car_img=car_img,
            car_make_key=make_key(hint) or make_key(car_img),
            country_img=flag_emoji_to_twemoji(flag),
            total=pts,
            nett=pts,
        ))

    logger.debug(f"{label}: parsed {len(rows)} rows")
    if rows:
        logger.debug(f"{label} sample row: {rows[0]}")
    return rows


# ---------- validation / titles ----------

def validate_rows(rows: list[StandingsRow], label: str, *, require_car_images: bool = True) -> None:
    """Refuse scrapes that look empty so a broken page never replaces a good post."""
    if not rows:
        raise StandingsParseError(f"{label}: parsed 0 rows")
    drivers = sum(1 for r in rows if r.driver.strip())
    if drivers < 3:
        raise StandingsParseError(f"{label}: scrape looks empty (drivers missing).")
    if require_car_images:
        cars = sum(1 for r in rows if r.car_img.strip())
        if cars < 3:
            raise StandingsParseError(f"{label}: scrape looks empty (car images missing).")


def extract_season(url: str) -> str:
    try:
        values = parse_qs(urlparse(url).query).get("s")
    except ValueError:
        return ""
    return values[0] if values else ""


def build_standings(rows: list[StandingsRow], name: str, url: str, subtitle: str = "") -> Standings:
    season = extract_season(url) or "??"
    return Standings(
        title=f"{name} — Season {season} ({len(rows)} drivers)",
        subtitle=subtitle,
        rows=rows,
    )
