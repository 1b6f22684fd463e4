from __future__ import annotations

import html


def plain_text_markdown(text: str) -> str:
    """Fallback renderer: escaped paragraphs, blank lines split paragraphs."""

    rendered: list[str] = []
    for block in text.split("\n\n"):
        block = block.strip()
        if block:
            rendered.append("<p>" + html.escape(block).replace("\n", "<br>") + "</p>")
    return "".join(rendered)
