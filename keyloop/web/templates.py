"""Self-contained HTML pages shown in the browser after the OAuth redirect.

No external dependencies (no CDN). Inline CSS only.
"""

from html import escape

_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{title}</title>
<style>
  body {{
    font-family: system-ui, -apple-system, sans-serif;
    display: flex;
    justify-content: center;
    align-items: center;
    height: 100vh;
    margin: 0;
    background: #f5f5f5;
  }}
  .message {{ text-align: center; color: #333; }}
  .hint {{ color: #666; }}
  .error {{ color: #b3261e; }}
</style>
</head>
<body>
  <div class="message">
    <h2 class="{heading_class}">{heading}</h2>
    <p>{body}</p>
    <p class="hint">You can close this tab and return to the application.</p>
  </div>
</body>
</html>
"""

SUCCESS_HTML = _PAGE.format(
    title="Signed in",
    heading_class="",
    heading="&#10003; Success",
    body="Authentication complete!",
)


def error_html(message: str) -> str:
    """Error page; ``message`` comes from the query string and is escaped."""
    return _PAGE.format(
        title="Sign-in failed",
        heading_class="error",
        heading="Authentication failed",
        body=escape(message),
    )
