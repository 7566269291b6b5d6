"""HTML rewriting that injects the live-update client into served pages."""

from __future__ import annotations

import logging
import time
from functools import lru_cache
from importlib import resources
from pathlib import Path

logger = logging.getLogger(__name__)

CLIENT_SCRIPT_PATH = "/__orbit_hmr_client.js"


def is_html_file(path: Path) -> bool:
    """Check if a file is an HTML page based on extension."""
    return path.suffix.lower() in (".html", ".htm")


def client_script_tag(
    ws_port: int | None = None,
    reconnect_interval_ms: int | None = None,
    reconnect_max_attempts: int | None = None,
) -> str:
    """Script tag loading the client runtime.

    Args:
        ws_port: Live-update port, only emitted when it is not the HTTP port + 1
            the client computes on its own
        reconnect_interval_ms: Delay between client reconnect attempts
        reconnect_max_attempts: Reconnect attempts before the client gives up
    """
    attrs = {
        "data-hmr-port": ws_port,
        "data-hmr-reconnect-interval": reconnect_interval_ms,
        "data-hmr-reconnect-attempts": reconnect_max_attempts,
    }
    data_attrs = "".join(f' {name}="{value}"' for name, value in attrs.items() if value is not None)
    return (
        f'<script type="text/javascript" src="{CLIENT_SCRIPT_PATH}?v={int(time.time())}"'
        f"{data_attrs}></script>\n"
    )


def inject_hmr_client(html_content: str, ws_port: int | None = None, **client_options: int) -> str:
    """Insert the client script tag before the closing body tag.

    Pages that already load the client script are returned unchanged; pages
    that only call the registration function still get the script. Without a
    ``</body>`` tag the script is appended at the end. ``client_options`` are
    passed to :func:`client_script_tag`.
    """
    if CLIENT_SCRIPT_PATH in html_content:
        logger.debug("HMR client already present in HTML")
        return html_content

    script = client_script_tag(ws_port, **client_options)
    pos = html_content.lower().rfind("</body>")
    if pos == -1:
        logger.debug("No </body> tag found, appending HMR client at the end")
        return html_content + script

    return html_content[:pos] + script + html_content[pos:]


def render_html_file(path: Path, ws_port: int | None = None, **client_options: int) -> bytes:
    """Read an HTML file and return it with the client injected.

    Raises:
        OSError: If the file cannot be read
        UnicodeDecodeError: If the file is not valid UTF-8
    """
    content = path.read_text(encoding="utf-8")
    return inject_hmr_client(content, ws_port, **client_options).encode("utf-8")


@lru_cache(maxsize=1)
def get_hmr_client_js() -> str:
    """Client runtime source shipped with the package."""
    return resources.files("orbit_devserver").joinpath("static/hmr_client.js").read_text(
        encoding="utf-8"
    )
