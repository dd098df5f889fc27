import json
import logging
from pathlib import Path
from typing import Any

OUTPUT_DIRS = ("dist", "build", "public", "out", "_site")


def _has_build_script(pkg: dict[str, Any]) -> bool:
    scripts = pkg.get("scripts")
    return isinstance(scripts, dict) and bool(scripts.get("build"))


def detect_site_type(cwd: Path) -> str:
    pkg_path = cwd / "package.json"
    if pkg_path.exists():
        try:
            pkg = json.loads(pkg_path.read_text(encoding="utf-8-sig"))
        except (OSError, ValueError) as exc:
            logging.warning("Unreadable package.json in %s: %s", cwd, exc)
            return "nodejs"
        if isinstance(pkg, dict) and _has_build_script(pkg):
            return "static"
        return "nodejs"

    if (cwd / "index.html").exists():
        return "static"
    if any((cwd / name).exists() for name in OUTPUT_DIRS):
        return "static"
    return "nodejs"


def detect_output_dir(cwd: Path) -> Path | None:
    for name in OUTPUT_DIRS:
        candidate = cwd / name
        if candidate.exists():
            return candidate
    if (cwd / "index.html").exists():
        return cwd
    return None


def detect_spa(root: Path) -> bool:
    # sites shipping their own 404 page rely on real not-found handling
    return not (root / "404.html").exists()


def detect_site(cwd: Path) -> dict[str, Any]:
    output_dir = detect_output_dir(cwd)
    return {
        "type": detect_site_type(cwd),
        "outputDir": str(output_dir) if output_dir else "",
        "spa": detect_spa(output_dir or cwd),
    }
