"""HTML page shown in the browser after a redirect has been handled."""

from __future__ import annotations

import html
import re

from pathlib import Path


DEFAULT_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{{title}}</title>
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
  h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
  p { color: #666; }
</style></head>
<body><div class="card">
  <h1>{{title}}</h1>
  <p>{{body}}</p>
</div></body></html>"""

_PLACEHOLDER_RE = re.compile(r"\{\{(title|body)\}\}")


class HtmlTemplate:
    """Two-placeholder page template.

    Parameters
    ----------
    app_name : str
        Application name used in page titles.
    content : str, optional
        Custom HTML with ``{{title}}`` and ``{{body}}`` placeholders.
        ``None`` uses :data:`DEFAULT_TEMPLATE`.
    """

    def __init__(self, app_name: str = "desklogin", content: str | None = None) -> None:
        self.app_name = app_name
        self.content = content

    @classmethod
    def from_file(cls, path: str | Path, app_name: str = "desklogin") -> HtmlTemplate:
        """Load the template content from an HTML file."""
        return cls(app_name=app_name, content=Path(path).read_text(encoding="utf-8"))

    def generate(self, title: str, body: str) -> str:
        """Render the page with HTML-escaped ``title`` and ``body``.

        Placeholders are substituted in one pass, so a title containing
        ``{{body}}`` is shown literally.
        """
        template = self.content if self.content is not None else DEFAULT_TEMPLATE
        values = {"title": html.escape(title, quote=True), "body": html.escape(body, quote=True)}
        return _PLACEHOLDER_RE.sub(lambda match: values[match.group(1)], template)

    def success_page(self) -> str:
        """Page for a completed login."""
        return self.generate(f"{self.app_name} Sign-in Success", "You can close this window now.")

    def error_page(self, error: str, description: str) -> str:
        """Page for a failed or rejected callback."""
        body = f"{error} - {description}" if description else error
        return self.generate(f"{self.app_name} Sign-in Error", body)
