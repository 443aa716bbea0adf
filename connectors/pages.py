"""
Small HTML pages shown in the browser at the end of the OAuth redirect.
"""

from __future__ import annotations

from html import escape
from typing import Optional

_STYLE = """
        body {
            font-family: Arial, sans-serif;
            max-width: 700px; margin: 50px auto; padding: 20px;
        }
        .success { background: #d4edda; border: 1px solid #c3e6cb; color: #155724; }
        .error { background: #f8d7da; border: 1px solid #f5c6cb; color: #721c24; }
        .info { background: #d1ecf1; border: 1px solid #bee5eb; color: #0c5460; }
        .success, .error, .info { padding: 15px; border-radius: 5px; margin: 20px 0; }
        code {
            background: #f4f4f4; padding: 2px 6px; border-radius: 3px;
            font-family: monospace; word-break: break-all; display: block; margin: 10px 0;
        }
"""


def _page(title: str, body: str, script: str = "") -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{escape(title)}</title>
    <style>{_STYLE}</style>
</head>
<body>
{body}
{script}
</body>
</html>"""


def success_page(
    connection_id: str,
    connector_id: str,
    credential_id: Optional[str] = None,
    discovered: bool = False,
) -> str:
    conn = escape(connection_id)
    credential_line = (
        f"<p><strong>Credential ID:</strong></p><code>{escape(credential_id)}</code>"
        if credential_id and credential_id != connection_id
        else ""
    )
    note = (
        '<div class="info"><p>No authorization code was needed: Alloy completed '
        "the OAuth flow server-side and created the connection.</p></div>"
        if discovered
        else ""
    )
    body = f"""    <h1>✅ Success!</h1>
    <div class="success">
        <p><strong>Connection established successfully!</strong></p>
        <p><strong>Connection ID:</strong></p>
        <code>{conn}</code>
        {credential_line}
    </div>
    {note}
    <h2>Next Steps:</h2>
    <ol>
        <li>Copy the Connection ID above</li>
        <li>Add it to your <code>.env</code> file: <code>CONNECTION_ID={conn}</code></li>
        <li>Use this connection to work with {escape(connector_id)} via the Alloy API</li>
    </ol>
    <p><a href="/">← Back to Home</a></p>"""
    return _page("OAuth Success", body)


def error_page(message: str, description: Optional[str] = None, title: str = "OAuth Error") -> str:
    description_line = (
        f"<p><strong>Description:</strong> {escape(description)}</p>" if description else ""
    )
    body = f"""    <h1>{escape(title)}</h1>
    <div class="error">
        <p><strong>Error:</strong> {escape(message)}</p>
        {description_line}
    </div>
    <p><a href="/">← Back to Home</a></p>"""
    return _page(title, body)


def fragment_page(redirect_uri: str) -> str:
    """
    Page whose only job is to read ``window.location.hash`` and, if it
    carries a code (or error), re-navigate with it in the query string.
    """
    body = """    <h1>Processing OAuth Callback...</h1>
    <div class="info" id="status"><p>Looking for the authorization code…</p></div>"""
    script = f"""<script>
    (function() {{
        var hash = new URLSearchParams(window.location.hash.substring(1));
        var query = new URLSearchParams(window.location.search);
        var code = hash.get('code') || query.get('code');
        var state = hash.get('state') || query.get('state');
        var error = hash.get('error') || query.get('error');
        var errorDescription = hash.get('error_description');
        var path = window.location.pathname;

        if (error) {{
            window.location.href = path + '?error=' + encodeURIComponent(error) +
                (errorDescription ? '&error_description=' + encodeURIComponent(errorDescription) : '');
            return;
        }}
        if (code) {{
            window.location.href = path + '?code=' + encodeURIComponent(code) +
                (state ? '&state=' + encodeURIComponent(state) : '') +
                '&_extracted_from_fragment=true';
            return;
        }}
        document.getElementById('status').innerHTML =
            '<p><strong>No authorization code was found in the URL.</strong></p>' +
            '<p>Alloy may have completed the connection server-side; check your connections.</p>' +
            '<p>Redirect URI used: <code>{escape(redirect_uri)}</code></p>';
    }})();
</script>"""
    return _page("Processing OAuth Callback", body, script)
