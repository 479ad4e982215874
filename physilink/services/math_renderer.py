from __future__ import annotations

# stdlib
from functools import lru_cache
from io import BytesIO
from typing import Callable, List
import base64, html, logging, re

# third-party
from matplotlib.figure import Figure

# local
from physilink.core.config import settings
from physilink.models.schemas import MathSegment, Segment, TextSegment


logger = logging.getLogger("physilink.render")

# $...$ on a single line, shortest match first
MATH_SPAN = re.compile(r"\$(.*?)\$")

# Macros that reach outside the formula (links, files, definitions). Never typeset.
_BLOCKED = re.compile(
    r"\\(href|url|includegraphics|input|include|write|immediate|def|newcommand|renewcommand)(?![A-Za-z])"
)
_ENVIRONMENTS = re.compile(r"\\(begin|end)\{(aligned|align\*?|equation\*?|gathered)\}")


class UnrenderableMath(ValueError):
    pass


# ==============================================================================
# Macro normalisation
# ==============================================================================

def normalize_macros(source: str) -> str:
    """
    Map the extended macros the model likes to emit onto what mathtext understands.

    Raises UnrenderableMath for refused macros or a stray ``$`` left in the source.
    """
    if _BLOCKED.search(source):
        raise UnrenderableMath(f"refused macro in {source!r}")

    s = source.strip()
    # display-mode input sometimes arrives still wrapped
    if len(s) >= 2 and s[0] == "$" and s[-1] == "$":
        s = s[1:-1].strip()
    if s.startswith(r"\[") and s.endswith(r"\]"):
        s = s[2:-2].strip()
    if "$" in s:
        raise UnrenderableMath(f"unbalanced delimiter in {source!r}")
    s = " ".join(s.split())

    if _ENVIRONMENTS.search(s):
        s = _ENVIRONMENTS.sub("", s).replace("&", "").replace("\\\\", " ")
    s = re.sub(r"\\(displaystyle|textstyle)(?![A-Za-z])", "", s)
    s = re.sub(r"\\(left|right)(?![A-Za-z])", "", s)
    s = re.sub(r"\\[dt]frac(?![A-Za-z])", r"\\frac", s)
    s = re.sub(r"\\text(?![A-Za-z])", r"\\mathrm", s)

    # bare log/ln gain their backslash
    s = re.sub(r"(?<!\\)\blog\b", lambda m: r"\log", s)
    s = re.sub(r"(?<!\\)\bln\b", lambda m: r"\ln", s)
    return s.strip()


# ==============================================================================
# Typesetting
# ==============================================================================

@lru_cache(maxsize=settings.MATH_CACHE_SIZE)
def typeset(source: str, display: bool = False) -> str:
    """Render one formula with mathtext and return it as a PNG data URI."""
    expr = normalize_macros(source)
    if not expr:
        raise UnrenderableMath("empty formula")

    fig = Figure(figsize=(0.01, 0.01))
    fig.patch.set_alpha(0.0)
    size = settings.MATH_FONT_SIZE * (1.4 if display else 1.0)
    fig.text(0, 0, f"${expr}$", fontsize=size)

    buf = BytesIO()
    fig.savefig(
        buf,
        format="png",
        dpi=settings.MATH_DPI,
        bbox_inches="tight",
        pad_inches=0.02,
        transparent=True,
        metadata={"Software": None},
    )
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class MathRenderer:
    """Splits mixed prose/LaTeX text into segments and typesets the math parts."""

    def __init__(self, typeset: Callable[[str, bool], str] = typeset):
        self._typeset = typeset

    def render(self, text: str, display_mode: bool = False) -> List[Segment]:
        if not text:
            return []
        if display_mode:
            return self._render_display(text)

        segments: List[Segment] = []
        pos = 0
        for m in MATH_SPAN.finditer(text):
            if m.start() > pos:
                segments.append(TextSegment(value=text[pos:m.start()]))
            segments.append(self._math(m.group(1), display=False))
            pos = m.end()
        if pos < len(text):
            segments.append(TextSegment(value=text[pos:]))
        return segments

    def _render_display(self, text: str) -> List[Segment]:
        if not text.strip():
            return [TextSegment(value=text)]
        seg = self._math(text, display=True)
        if not seg.rendered_ok:
            return [TextSegment(value=text)]
        return [seg]

    def _math(self, source: str, display: bool) -> MathSegment:
        if not source.strip():
            # "$$" typesets to nothing
            return MathSegment(source=source, rendered_ok=True, display=display)
        try:
            image = self._typeset(source, display)
        except Exception as e:
            logger.debug("math fallback for %r (%s)", source, e)
            return MathSegment(source=source, rendered_ok=False, display=display)
        return MathSegment(source=source, rendered_ok=True, display=display, image=image)


_renderer = MathRenderer()


def render(text: str, display_mode: bool = False) -> List[Segment]:
    return _renderer.render(text, display_mode)


def render_html(segments: List[Segment]) -> str:
    """HTML fragment for a segment list; text is escaped, math becomes inline images."""
    parts: List[str] = []
    for seg in segments:
        if isinstance(seg, TextSegment):
            parts.append(html.escape(seg.value))
        elif not seg.rendered_ok:
            parts.append(html.escape(seg.fallback_text))
        elif seg.image:
            img = f'<img class="math" alt="{html.escape(seg.source, quote=True)}" src="{seg.image}">'
            parts.append(f'<div class="math-display">{img}</div>' if seg.display else img)
    return "".join(parts)
