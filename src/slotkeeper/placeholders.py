import html
import logging
import os
import shutil
from pathlib import Path

from slotkeeper.store import SLOT_IDS, default_port, validate_slot_id

DEFAULT_ADMIN_URL = "http://localhost:9000"

BASIC_CSS = """body {
    font-family: system-ui, -apple-system, sans-serif;
    max-width: 800px;
    margin: 0 auto;
    padding: 2rem;
    text-align: center;
    background: #f8f9fa;
}

.container {
    background: white;
    padding: 3rem;
    border-radius: 8px;
    box-shadow: 0 2px 10px rgba(0, 0, 0, 0.1);
}

.slot-name {
    color: #0066cc;
    font-size: 2.5rem;
    margin-bottom: 1rem;
}

.status {
    color: #666;
    font-size: 1.2rem;
    margin-bottom: 2rem;
}

.deploy-btn {
    display: inline-block;
    background: #0066cc;
    color: white;
    padding: 1rem 2rem;
    text-decoration: none;
    border-radius: 5px;
    font-weight: 500;
}

.deploy-btn:hover {
    background: #0052a3;
}

.url-info {
    background: #f8f9fa;
    padding: 1rem;
    border-radius: 5px;
    margin: 1rem 0;
}
"""


def slot_url(slot: str, port: int) -> str:
    return os.environ.get(f"SLOT_{slot.upper()}_URL") or f"http://localhost:{port}"


def admin_url() -> str:
    return os.environ.get("ADMIN_URL") or DEFAULT_ADMIN_URL


def render_slot_html(slot: str, url: str, admin: str) -> str:
    name = html.escape(slot.upper())
    url = html.escape(url, quote=True)
    admin = html.escape(admin, quote=True)
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Slot {name} - Ready for Deployment</title>
    <link rel="stylesheet" href="style.css">
</head>
<body>
    <div class="container">
        <h1 class="slot-name">Slot {name}</h1>
        <p class="status">This slot is ready for deployment</p>
        <p>Deploy an application to this slot to make it accessible.</p>

        <div class="url-info">
            <p><strong>This slot will be available at:</strong></p>
            <p><a href="{url}" target="_blank">{url}</a></p>
        </div>

        <a href="{admin}" class="deploy-btn">Configure &amp; Deploy Application</a>
    </div>
</body>
</html>
"""


def generate_slot_placeholder(
    base: Path, slot: str, port: int | None = None, shared_css: Path | None = None
) -> Path:
    validate_slot_id(slot)
    port = port or default_port(slot)
    slot_dir = base / slot
    slot_dir.mkdir(parents=True, exist_ok=True)

    index_path = slot_dir / "index.html"
    index_path.write_text(render_slot_html(slot, slot_url(slot, port), admin_url()), encoding="utf-8")

    css_path = slot_dir / "style.css"
    if shared_css is not None and shared_css.exists():
        shutil.copyfile(shared_css, css_path)
    else:
        if shared_css is not None:
            logging.warning("Shared CSS file not found: %s", shared_css)
        css_path.write_text(BASIC_CSS, encoding="utf-8")

    logging.info("[%s] Generated placeholder: %s", slot, index_path)
    return index_path


def generate_placeholders(
    base: Path,
    ports: dict[str, int] | None = None,
    shared_css: Path | None = None,
) -> dict[str, Path]:
    ports = ports or {}
    generated: dict[str, Path] = {}
    failed: list[str] = []
    for slot in SLOT_IDS:
        try:
            generated[slot] = generate_slot_placeholder(
                base, slot, ports.get(slot), shared_css
            )
        except OSError as exc:
            logging.error("[%s] Failed to generate placeholder: %s", slot, exc)
            failed.append(slot)
    if failed:
        raise OSError(f"Placeholder generation failed for slots: {', '.join(failed)}")
    return generated


def clean_placeholders(base: Path) -> bool:
    if not base.exists():
        return False
    shutil.rmtree(base)
    logging.info("Removed placeholder files under %s", base)
    return True
