# =============================================================================
# Rendering Module
# =============================================================================
# Text derivation for HTML-only messages. Only plain-text extraction lives
# here; presenting messages is left to the consumers of the mirror.
# =============================================================================

from mailmirror.rendering.text import TextExtractor, TextExtractOptions, html_to_text

__all__ = ["TextExtractor", "TextExtractOptions", "html_to_text"]
