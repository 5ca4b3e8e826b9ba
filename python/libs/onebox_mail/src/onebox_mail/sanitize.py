"""HTML sanitization and plain-text derivation for indexed mail bodies."""

import html
import logging
import re

from bs4 import BeautifulSoup, Comment

logger = logging.getLogger(__name__)

ALLOWED_TAGS = frozenset(
    {
        "address", "article", "aside", "footer", "header",
        "h1", "h2", "h3", "h4", "h5", "h6", "hgroup", "main", "nav", "section",
        "blockquote", "dd", "div", "dl", "dt", "figcaption", "figure", "hr",
        "li", "ol", "p", "pre", "ul",
        "a", "abbr", "b", "bdi", "bdo", "br", "cite", "code", "data", "dfn",
        "em", "i", "kbd", "mark", "q", "rb", "rp", "rt", "rtc", "ruby", "s",
        "samp", "small", "span", "strong", "sub", "sup", "time", "u", "var", "wbr",
        "caption", "col", "colgroup", "table", "tbody", "td", "tfoot", "th",
        "thead", "tr",
        "img",
    }
)

ALLOWED_ATTRIBUTES: dict[str, frozenset[str]] = {
    "a": frozenset({"href", "name", "target"}),
    "img": frozenset({"src", "alt", "title", "width", "height"}),
    "*": frozenset({"style"}),
}

ALLOWED_SCHEMES = frozenset({"http", "https", "mailto"})

URL_ATTRIBUTES = frozenset({"href", "src"})

# Dropped together with their content
NON_TEXT_TAGS = ("script", "style", "textarea", "option", "noscript")

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")
_CONTROL_RE = re.compile(r"[\x00-\x20\x7f]+")
_UNSAFE_STYLE_RE = re.compile(r"expression\s*\(|javascript:|vbscript:", re.IGNORECASE)


def _is_allowed_url(value: str) -> bool:
    """Check a link target against the scheme allow-list."""
    # Browsers ignore embedded whitespace/control chars, so "java\tscript:" is still javascript
    compact = _CONTROL_RE.sub("", value)
    match = _SCHEME_RE.match(compact)
    if not match:
        return True  # relative or protocol-relative
    return match.group(1).lower() in ALLOWED_SCHEMES


def _is_allowed_attribute(name: str, value: object) -> bool:
    if not isinstance(value, str):
        return False
    if name in URL_ATTRIBUTES:
        return _is_allowed_url(value)
    if name == "style":
        return not _UNSAFE_STYLE_RE.search(value)
    return True


def _clean(soup: BeautifulSoup) -> None:
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()

    for tag in soup.find_all(NON_TEXT_TAGS):
        if not tag.decomposed:
            tag.decompose()

    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue

        allowed = ALLOWED_ATTRIBUTES.get(tag.name, frozenset()) | ALLOWED_ATTRIBUTES["*"]
        tag.attrs = {
            name: value
            for name, value in tag.attrs.items()
            if name in allowed and _is_allowed_attribute(name, value)
        }


def sanitize(raw_html: str) -> str:
    """
    Strip unsafe markup from an HTML body.

    Disallowed tags are unwrapped (their text is kept), non-text tags such
    as ``<script>`` are removed entirely, attributes are filtered per tag and
    link targets restricted to http/https/mailto. Never raises: input that
    cannot be parsed is returned as escaped text.

    Args:
        raw_html: Untrusted HTML

    Returns:
        Safe HTML
    """
    if not raw_html:
        return ""

    try:
        soup = BeautifulSoup(raw_html, "html.parser")
        _clean(soup)
        return str(soup)
    except Exception as e:
        logger.warning("HTML sanitization failed, falling back to escaped text: %s", e)
        return html.escape(raw_html)


def html_to_text(safe_html: str) -> str:
    """Flatten HTML into a single whitespace-collapsed line of text."""
    if not safe_html:
        return ""
    text = BeautifulSoup(safe_html, "html.parser").get_text(" ")
    return " ".join(text.split())


def text_to_html(text: str) -> str:
    """Render a plain-text body as minimal HTML paragraphs."""
    if not text:
        return ""
    paragraphs = re.split(r"\r?\n\s*\r?\n", text.strip())
    rendered = [
        "<p>" + html.escape(paragraph).replace("\r\n", "\n").replace("\n", "<br/>") + "</p>"
        for paragraph in paragraphs
        if paragraph.strip()
    ]
    return "".join(rendered)
