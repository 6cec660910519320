from html import escape

from edge_proxy.config import ProxyConfig

_STYLE = """
    * { margin: 0; padding: 0; box-sizing: border-box; }
    body {
      font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
      background: #f4f5fb;
      padding: 40px 20px;
      color: #333;
    }
    .container {
      background: white;
      border-radius: 12px;
      box-shadow: 0 10px 30px rgba(0,0,0,0.12);
      max-width: 820px;
      margin: 0 auto;
      padding: 36px;
    }
    h1 { margin-bottom: 8px; }
    h2 {
      color: #4c51bf;
      margin: 28px 0 12px;
      border-bottom: 2px solid #4c51bf;
      padding-bottom: 6px;
    }
    .code-block {
      background: #f5f5f5;
      border-left: 4px solid #4c51bf;
      padding: 12px 15px;
      margin: 10px 0;
      font-family: 'Courier New', monospace;
      overflow-x: auto;
    }
    .notice {
      background: #fef3c7;
      border-left: 4px solid #f59e0b;
      padding: 12px 15px;
      margin: 16px 0;
    }
    ul { margin-left: 20px; }
    li { margin-bottom: 8px; line-height: 1.5; }
"""


def _proxy_prefix(config: ProxyConfig) -> str:
    if config.auth_segment:
        return f"/{escape('<access-segment>')}"
    return ""


def render_usage_page(config: ProxyConfig, version: str) -> str:
    """Render the HTML usage page served at the root path."""
    prefix = _proxy_prefix(config)
    auth_notice = (
        '<div class="notice">Access is protected: every request must start with the '
        "shared access segment, <code>/&lt;access-segment&gt;/&lt;target&gt;</code>.</div>"
        if config.auth_segment
        else ""
    )
    if config.max_body_size > 0:
        body_limit = f"{config.max_body_size / 1024 / 1024:.1f} MB"
    else:
        body_limit = "unlimited"
    allowed = (
        f"{len(config.allowed_domains)} entries" if config.allowed_domains else "all domains"
    )
    websocket_state = "enabled" if config.websocket_enabled else "disabled"
    edge_state = "enabled" if config.edge_cache_enabled else "disabled"

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Dynamic Edge Proxy</title>
  <style>{_STYLE}</style>
</head>
<body>
  <div class="container">
    <h1>Dynamic Edge Proxy</h1>
    <p>The upstream is taken from the request path itself.</p>
    {auth_notice}

    <h2>Format</h2>
    <div class="code-block">https://&lt;proxy-host&gt;{prefix}/&lt;target-host&gt;[/path][?query]</div>

    <h2>Examples</h2>
    <div class="code-block">{prefix}/api.github.com/users &rarr; https://api.github.com/users</div>
    <div class="code-block">{prefix}/example.com/api/data?key=value &rarr; https://example.com/api/data?key=value</div>
    <div class="code-block">{prefix}/http://example.com/plain &rarr; http://example.com/plain</div>

    <h2>Current configuration</h2>
    <ul>
      <li><strong>Version:</strong> {escape(version)}</li>
      <li><strong>Default scheme:</strong> {escape(config.default_scheme.upper())}</li>
      <li><strong>Redirects followed:</strong> up to {config.max_redirects}</li>
      <li><strong>Request timeout:</strong> {config.request_timeout_ms / 1000:g} s
        (streaming paths {config.stream_timeout_ms / 1000:g} s)</li>
      <li><strong>Max request body:</strong> {body_limit}</li>
      <li><strong>Blocked domains:</strong> {len(config.blocked_domains)} entries</li>
      <li><strong>Allowed domains:</strong> {allowed}</li>
      <li><strong>WebSocket bridging:</strong> {websocket_state}</li>
      <li><strong>Edge caching:</strong> {edge_state}</li>
    </ul>

    <h2>Endpoints</h2>
    <ul>
      <li><code>/health</code> or <code>/ping</code> - liveness check</li>
      <li><code>/</code> - this page</li>
      <li><code>{prefix}/&lt;target&gt;</code> - proxied request (any method, websocket upgrades included)</li>
    </ul>
  </div>
</body>
</html>"""
