"""Font resolution for drawtext.

Maps a CSS font-family list plus a weight onto a font file that exists on this
host. Resolution never fails: when nothing is found the empty string is
returned and ffmpeg falls back to its built-in font.
"""

import logging
import os
import sys
from collections.abc import Callable

from PIL import ImageFont

logger = logging.getLogger(__name__)

GENERIC_FAMILIES = frozenset({
    "serif",
    "sans-serif",
    "monospace",
    "cursive",
    "fantasy",
    "system-ui",
    "ui-serif",
    "ui-sans-serif",
    "ui-monospace",
    "ui-rounded",
    "emoji",
    "math",
    "fangsong",
    "inherit",
    "initial",
    "unset",
    "-apple-system",
    "blinkmacsystemfont",
})

BOLD_KEYWORDS = frozenset({"bold", "bolder", "700", "800", "900"})

# family -> platform -> (regular candidates, bold candidates)
FontCandidates = dict[str, tuple[list[str], list[str]]]

FONT_TABLE: dict[str, FontCandidates] = {
    "arial": {
        "linux": (
            ["/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
             "/usr/share/fonts/truetype/msttcorefonts/Arial.ttf"],
            ["/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
             "/usr/share/fonts/truetype/msttcorefonts/Arial_Bold.ttf"],
        ),
        "windows": (["C:/Windows/Fonts/arial.ttf"], ["C:/Windows/Fonts/arialbd.ttf"]),
        "darwin": (
            ["/System/Library/Fonts/Supplemental/Arial.ttf", "/Library/Fonts/Arial.ttf"],
            ["/System/Library/Fonts/Supplemental/Arial Bold.ttf", "/Library/Fonts/Arial Bold.ttf"],
        ),
    },
    "helvetica": {
        "linux": (
            ["/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf"],
            ["/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf"],
        ),
        "windows": (["C:/Windows/Fonts/arial.ttf"], ["C:/Windows/Fonts/arialbd.ttf"]),
        "darwin": (["/System/Library/Fonts/Helvetica.ttc"], ["/System/Library/Fonts/Helvetica.ttc"]),
    },
    "inter": {
        "linux": (
            ["/usr/share/fonts/truetype/inter/Inter-Regular.ttf", "/usr/share/fonts/opentype/inter/Inter-Regular.otf"],
            ["/usr/share/fonts/truetype/inter/Inter-Bold.ttf", "/usr/share/fonts/opentype/inter/Inter-Bold.otf"],
        ),
        "windows": (["C:/Windows/Fonts/Inter-Regular.ttf"], ["C:/Windows/Fonts/Inter-Bold.ttf"]),
        "darwin": (["/Library/Fonts/Inter-Regular.ttf"], ["/Library/Fonts/Inter-Bold.ttf"]),
    },
    "roboto": {
        "linux": (
            ["/usr/share/fonts/truetype/roboto/unhinted/RobotoTTF/Roboto-Regular.ttf",
             "/usr/share/fonts/truetype/roboto/Roboto-Regular.ttf"],
            ["/usr/share/fonts/truetype/roboto/unhinted/RobotoTTF/Roboto-Bold.ttf",
             "/usr/share/fonts/truetype/roboto/Roboto-Bold.ttf"],
        ),
        "windows": (["C:/Windows/Fonts/Roboto-Regular.ttf"], ["C:/Windows/Fonts/Roboto-Bold.ttf"]),
        "darwin": (["/Library/Fonts/Roboto-Regular.ttf"], ["/Library/Fonts/Roboto-Bold.ttf"]),
    },
    "impact": {
        "linux": (
            ["/usr/share/fonts/truetype/msttcorefonts/Impact.ttf"],
            ["/usr/share/fonts/truetype/msttcorefonts/Impact.ttf"],
        ),
        "windows": (["C:/Windows/Fonts/impact.ttf"], ["C:/Windows/Fonts/impact.ttf"]),
        "darwin": (
            ["/System/Library/Fonts/Supplemental/Impact.ttf"],
            ["/System/Library/Fonts/Supplemental/Impact.ttf"],
        ),
    },
    "times new roman": {
        "linux": (
            ["/usr/share/fonts/truetype/liberation/LiberationSerif-Regular.ttf"],
            ["/usr/share/fonts/truetype/liberation/LiberationSerif-Bold.ttf"],
        ),
        "windows": (["C:/Windows/Fonts/times.ttf"], ["C:/Windows/Fonts/timesbd.ttf"]),
        "darwin": (
            ["/System/Library/Fonts/Supplemental/Times New Roman.ttf"],
            ["/System/Library/Fonts/Supplemental/Times New Roman Bold.ttf"],
        ),
    },
    "courier new": {
        "linux": (
            ["/usr/share/fonts/truetype/liberation/LiberationMono-Regular.ttf"],
            ["/usr/share/fonts/truetype/liberation/LiberationMono-Bold.ttf"],
        ),
        "windows": (["C:/Windows/Fonts/cour.ttf"], ["C:/Windows/Fonts/courbd.ttf"]),
        "darwin": (
            ["/System/Library/Fonts/Supplemental/Courier New.ttf"],
            ["/System/Library/Fonts/Supplemental/Courier New Bold.ttf"],
        ),
    },
    "noto sans jp": {
        "linux": (
            ["/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc",
             "/usr/share/fonts/truetype/noto/NotoSansCJK-Regular.ttc"],
            ["/usr/share/fonts/opentype/noto/NotoSansCJK-Bold.ttc",
             "/usr/share/fonts/truetype/noto/NotoSansCJK-Bold.ttc"],
        ),
        "windows": (["C:/Windows/Fonts/YuGothR.ttc", "C:/Windows/Fonts/msgothic.ttc"], ["C:/Windows/Fonts/YuGothB.ttc"]),
        "darwin": (
            ["/System/Library/Fonts/ヒラギノ角ゴシック W3.ttc"],
            ["/System/Library/Fonts/ヒラギノ角ゴシック W6.ttc"],
        ),
    },
    "dejavu sans": {
        "linux": (
            ["/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"],
            ["/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"],
        ),
        "windows": (["C:/Windows/Fonts/DejaVuSans.ttf"], ["C:/Windows/Fonts/DejaVuSans-Bold.ttf"]),
        "darwin": (["/Library/Fonts/DejaVuSans.ttf"], ["/Library/Fonts/DejaVuSans-Bold.ttf"]),
    },
}

# Aliases for families the editor offers under a different name
FAMILY_ALIASES = {
    "liberation sans": "arial",
    "helvetica neue": "helvetica",
    "noto sans cjk jp": "noto sans jp",
    "notosansjp": "noto sans jp",
    "times": "times new roman",
    "courier": "courier new",
}

# Tried after the requested family, Linux first
UNIVERSAL_FALLBACKS: tuple[tuple[str, str], ...] = (
    ("/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf", "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"),
    ("/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
     "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf"),
    ("/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc", "/usr/share/fonts/opentype/noto/NotoSansCJK-Bold.ttc"),
    ("C:/Windows/Fonts/arial.ttf", "C:/Windows/Fonts/arialbd.ttf"),
    ("C:/Windows/Fonts/segoeui.ttf", "C:/Windows/Fonts/segoeuib.ttf"),
    ("/System/Library/Fonts/Helvetica.ttc", "/System/Library/Fonts/Helvetica.ttc"),
    ("/System/Library/Fonts/Supplemental/Arial.ttf", "/System/Library/Fonts/Supplemental/Arial Bold.ttf"),
)


def current_platform() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


def parse_family_list(font_family: str | None) -> list[str]:
    """Concrete family names from a CSS ``font-family`` value, in order."""
    if not font_family:
        return []
    names = []
    for part in font_family.split(","):
        name = part.strip().strip("'\"").strip()
        if name and name.lower() not in GENERIC_FAMILIES:
            names.append(name)
    return names


def is_bold(font_weight: str | int | None) -> bool:
    if font_weight is None:
        return False
    return str(font_weight).strip().lower() in BOLD_KEYWORDS


def _loadable(path: str) -> bool:
    try:
        ImageFont.truetype(path, 12)
    except OSError:
        return False
    return True


class FontResolver:
    """Resolve (family, weight) to a font file path or ``""``."""

    def __init__(
        self,
        platform: str | None = None,
        exists: Callable[[str], bool] = os.path.isfile,
        verify: bool = True,
    ):
        self.platform = platform or current_platform()
        self._exists = exists
        self._verify = verify
        self._cache: dict[tuple[tuple[str, ...], bool], str] = {}

    def _usable(self, path: str) -> bool:
        if not self._exists(path):
            return False
        return not self._verify or _loadable(path)

    def _table_candidates(self, family: str, bold: bool) -> list[str]:
        key = family.lower()
        key = FAMILY_ALIASES.get(key, key)
        entry = FONT_TABLE.get(key)
        if not entry or self.platform not in entry:
            return []
        regular, bold_paths = entry[self.platform]
        return [*bold_paths, *regular] if bold else list(regular)

    def _fallback_candidates(self, bold: bool) -> list[str]:
        return [b if bold else r for r, b in UNIVERSAL_FALLBACKS] + [r for r, _ in UNIVERSAL_FALLBACKS]

    def resolve(self, font_family: str | None = None, font_weight: str | int | None = None) -> str:
        """Font file for the first resolvable family, or ``""`` for engine default."""
        families = parse_family_list(font_family)
        bold = is_bold(font_weight)
        cache_key = (tuple(f.lower() for f in families), bold)
        if cache_key in self._cache:
            return self._cache[cache_key]

        candidates = [path for family in families for path in self._table_candidates(family, bold)]
        if families and not candidates:
            logger.debug(f"[FONT] No table entry for {families} on {self.platform}")

        seen: set[str] = set()
        resolved = ""
        for path in [*candidates, *self._fallback_candidates(bold)]:
            if path in seen:
                continue
            seen.add(path)
            try:
                usable = self._usable(path)
            except Exception as e:
                logger.warning(f"[FONT] Could not check {path}: {e}")
                usable = False
            if usable:
                resolved = path
                break

        if not resolved:
            logger.warning(f"[FONT] No font file found for '{font_family}', using engine default")
        self._cache[cache_key] = resolved
        return resolved
