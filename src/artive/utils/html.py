"""HTML cleanup helpers for fetched articles and generated results."""

from bs4 import BeautifulSoup

_BLOCKED_ELEMENTS = ["script", "style", "iframe"]


def clean_article_html(html: str) -> str:
    """
    Remove executable and embedded foreign content from article HTML.

    Drops <script>, <style> and <iframe> elements together with their bodies,
    and every on* event-handler attribute. Everything else is kept so the
    rewrite model still sees the article's structure.

    Args:
        html: Raw article HTML

    Returns:
        Sanitized HTML (empty string for empty input)

    Example:
        >>> clean_article_html('<p onclick="x()">hi</p><script>alert(1)</script>')
        '<p>hi</p>'
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(_BLOCKED_ELEMENTS):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in [name for name in tag.attrs if name.lower().startswith("on")]:
            del tag[attr]

    return str(soup)


def html_to_text(html: str) -> str:
    """Plain text of an HTML fragment, blocks joined by single spaces."""
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text(" ", strip=True)
