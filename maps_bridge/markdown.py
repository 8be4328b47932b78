"""Markdown rendering for chat messages."""

from markdown_it import MarkdownIt


class MarkdownRenderer:
    """Renders chat text to HTML with raw HTML input disabled."""

    def __init__(self):
        self.md = (
            MarkdownIt("commonmark", {"breaks": True, "html": False})
            .enable("table")
            .enable("strikethrough")
        )

    def to_html(self, text: str) -> str:
        return self.md.render(text or "")

    async def render(self, text: str) -> str:
        return self.to_html(text)


async def plain_text(text: str) -> str:
    """Renderer that leaves text untouched, for terminals."""
    return text
