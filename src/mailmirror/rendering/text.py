# =============================================================================
# HTML to Plain Text Extraction
# =============================================================================
# Derives searchable/preview text from HTML-only messages using inscriptis.
#
# inscriptis handles the layouts that are common in email HTML:
#   - Complex table layouts
#   - Proper whitespace and line break handling
#   - Lists, headings, and other semantic elements
#
# The derived text never replaces the original HTML; the message model keeps
# both.
# =============================================================================

import re
from dataclasses import dataclass

from inscriptis import get_text
from inscriptis.css_profiles import CSS_PROFILES
from inscriptis.model.config import ParserConfig


@dataclass
class TextExtractOptions:
    """
    Options for text extraction.

    Attributes:
        display_links: Append link targets after the link text.
        display_images: Render image alt texts as placeholders.
        max_length: Truncate the result to this many characters (0 = no limit).
    """
    display_links: bool = False
    display_images: bool = False
    max_length: int = 0


class TextExtractor:
    """
    Converts HTML bodies to plain text.

    Usage:
        >>> extractor = TextExtractor()
        >>> extractor.extract("<p>Hello <b>there</b></p>")
        'Hello there'
    """

    def __init__(self, options: TextExtractOptions | None = None) -> None:
        self.options = options or TextExtractOptions()
        self._config = ParserConfig(
            css=CSS_PROFILES["strict"],  # Better whitespace handling
            display_links=self.options.display_links,
            display_images=self.options.display_images,
            display_anchors=False,
        )

    def extract(self, html_content: str) -> str:
        """
        Convert HTML to plain text.

        Args:
            html_content: HTML content to convert.

        Returns:
            Plain text, or "" for empty input.
        """
        if not html_content or not html_content.strip():
            return ""

        text = get_text(self._preclean_html(html_content), self._config)
        text = self._clean_output(text)

        if self.options.max_length and len(text) > self.options.max_length:
            text = text[: self.options.max_length].rstrip()
        return text

    def _preclean_html(self, html: str) -> str:
        """Remove markup that inscriptis would otherwise render as text."""
        # IE conditional comments and MSO blocks
        html = re.sub(r'<!--\[if[^\]]*\]>.*?<!\[endif\]-->', '', html, flags=re.DOTALL | re.IGNORECASE)
        html = re.sub(r'<!\[if[^\]]*\]>.*?<!\[endif\]>', '', html, flags=re.DOTALL | re.IGNORECASE)

        # Style and script blocks
        html = re.sub(r'<style[^>]*>.*?</style>', '', html, flags=re.DOTALL | re.IGNORECASE)
        html = re.sub(r'<script[^>]*>.*?</script>', '', html, flags=re.DOTALL | re.IGNORECASE)

        # XML declarations and Office namespace tags
        html = re.sub(r'<\?xml[^>]*\?>', '', html, flags=re.IGNORECASE)
        html = re.sub(r'<o:[^>]*>.*?</o:[^>]*>', '', html, flags=re.DOTALL)
        html = re.sub(r'<v:[^>]*>.*?</v:[^>]*>', '', html, flags=re.DOTALL)

        return html

    def _clean_output(self, text: str) -> str:
        """Normalize whitespace in the extracted text."""
        # Zero-width characters (tracking pixels, preheader padding)
        text = re.sub(r"[\u200b\u200c\u200d\u2060\ufeff\u034f]+", "", text)

        # Trailing whitespace per line, then at most one blank line in a row
        text = "\n".join(line.rstrip() for line in text.split("\n"))
        text = re.sub(r'\n{3,}', '\n\n', text)

        return text.strip()


_default_extractor: TextExtractor | None = None


def html_to_text(html_content: str) -> str:
    """Module-level shortcut using a shared default extractor."""
    global _default_extractor
    if _default_extractor is None:
        _default_extractor = TextExtractor()
    return _default_extractor.extract(html_content)
